from src.auth.context import TenantContext
from src.auth.dependencies import get_tenant_context, require_internal_key

__all__ = [
    "TenantContext",
    "get_tenant_context",
    "require_internal_key",
]
