"""
Storefront — 認証 (セッション解決)

認証ライブラリが同じドキュメントストアに保存したセッションを引き、
リクエストのユーザーを特定する。資格情報の検証(サインイン)はここでは行わない。

トークンは Authorization: Bearer <token> またはセッション Cookie から取る。
Cookie の値は "<token>.<署名>" 形式なので先頭部分だけを使う。

認証サービス (better-auth) が別プロセスで動く場合は RemoteAuthProvider が
Cookie と Authorization ヘッダを get-session エンドポイントに転送する。
"""

import logging

import httpx
from fastapi import Depends, HTTPException, Request
from pydantic import BaseModel

from .models import as_utc, utcnow
from .repositories import Repositories

logger = logging.getLogger(__name__)


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str | None = None
    role: str = "user"


class SessionAuthProvider:
    def __init__(self, repos: Repositories, cookie_name: str) -> None:
        self.repos = repos
        self.cookie_name = cookie_name

    def extract_token(self, request: Request) -> str | None:
        header = request.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        cookie = request.cookies.get(self.cookie_name)
        if cookie:
            return cookie.split(".", 1)[0]
        return None

    async def resolve(self, request: Request) -> CurrentUser | None:
        token = self.extract_token(request)
        if not token:
            return None

        session = await self.repos.sessions.find_by_token(token)
        if session is None or as_utc(session.expires_at) <= utcnow():
            return None

        user = await self.repos.users.get(session.user_id)
        if user is None:
            logger.warning("Session %s refers to missing user %s", session.id, session.user_id)
            return None
        return CurrentUser(id=user.id, email=user.email, name=user.name, role=user.role)


class RemoteAuthProvider:
    def __init__(
        self,
        repos: Repositories,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.repos = repos
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    async def resolve(self, request: Request) -> CurrentUser | None:
        headers = {
            name: request.headers[name]
            for name in ("cookie", "authorization")
            if name in request.headers
        }
        if not headers:
            return None

        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            try:
                resp = await client.get(f"{self.base_url}/api/auth/get-session", headers=headers)
                resp.raise_for_status()
            except httpx.HTTPError:
                logger.exception("Auth service request failed")
                return None

        body = resp.json()
        if not body or not body.get("user"):
            return None

        # ロールはストアのユーザードキュメントを正とする
        user = await self.repos.users.get(body["user"]["id"])
        if user is None:
            return None
        return CurrentUser(id=user.id, email=user.email, name=user.name, role=user.role)


# ── FastAPI 依存関数 ─────────────────────────────


async def get_current_user(request: Request) -> CurrentUser:
    user = await request.app.state.auth.resolve(request)
    if user is None:
        raise HTTPException(401, "Unauthorized: Invalid or expired session")
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != "admin":
        raise HTTPException(403, "Forbidden: Admin access required")
    return user
