"""
Realtime Service — 接続時のトークン検証

トークンがない・不正な場合も接続は拒否しない(公開ダッシュボードのため)。
その場合は識別情報 (user id) を付与しないだけ。
"""

import logging

import jwt

from services.shared.app.config import JWT_ALGORITHM, JWT_SECRET

logger = logging.getLogger(__name__)


def extract_token(query_token: str | None, authorization: str | None) -> str | None:
    """?token=... を優先し、なければ Authorization: Bearer <token> を見る。"""
    if query_token:
        return query_token
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
    return None


def verify_token(
    token: str | None,
    secret: str = JWT_SECRET,
    algorithm: str = JWT_ALGORITHM,
) -> str | None:
    """検証済みトークンの `id` クレームを返す。検証できなければ None。"""
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError as e:
        logger.debug("Rejected socket token: %s", e)
        return None
    user_id = payload.get("id")
    return str(user_id) if user_id is not None else None
