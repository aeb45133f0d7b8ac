# collectsync/api/deps.py
from __future__ import annotations

from fastapi import Request

from collectsync.services.session_registry import SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    """会话表挂在 app.state 上，由 lifespan 创建；测试里可用 dependency_overrides 替换。"""
    return request.app.state.registry
