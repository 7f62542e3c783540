"""
Request-scoped dependencies
"""

from typing import Optional

from fastapi import Header, Request

from ..engine import DepositEngine


def get_engine(request: Request) -> DepositEngine:
    """The engine the application was created with"""
    return request.app.state.engine


def get_actor(x_actor: Optional[str] = Header(default=None)) -> str:
    """Who is calling; there is no authentication, callers identify themselves"""
    if x_actor is None or not x_actor.strip():
        return "system"
    return x_actor.strip()
