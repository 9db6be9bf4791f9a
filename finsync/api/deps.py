"""
FastAPI dependencies (DB session, upstream proxy, settings)
"""
from finsync.config import Settings, get_settings as _get_settings
from finsync.infrastructure.db.session import get_db as _get_db
from finsync.infrastructure.upstream.client import AuthenticatedProxy, get_upstream_proxy


# Re-export get_db для удобства
get_db = _get_db


def get_proxy() -> AuthenticatedProxy:
    """
    Shared AuthenticatedProxy (one TokenCache per process)

    Usage:
        @router.get("/sync/health")
        def health(proxy: AuthenticatedProxy = Depends(get_proxy)):
            ...
    """
    return get_upstream_proxy()


def get_settings() -> Settings:
    return _get_settings()
