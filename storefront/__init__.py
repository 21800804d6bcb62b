"""
Storefront — 注文・在庫コミットサービス

カートから注文を確定し、在庫を楽観的トランザクションで引き当てる。
"""
