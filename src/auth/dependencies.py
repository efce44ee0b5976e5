import hmac

from fastapi import Header, HTTPException, status

from src.auth.context import TenantContext
from src.config import settings


def _api_key_matches(provided: str | None) -> bool:
    expected = settings.internal_api_secret
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided, expected)


async def require_internal_key(
    x_internal_api_key: str | None = Header(None, alias="X-Internal-Api-Key"),
) -> None:
    """Reject callers that do not present the shared internal API key."""
    if not _api_key_matches(x_internal_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing internal API key",
        )


async def get_tenant_context(
    x_internal_api_key: str | None = Header(None, alias="X-Internal-Api-Key"),
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
) -> TenantContext:
    """
    Resolve the tenant a request acts for.

    The calling service authenticates with the internal API key and names the
    tenant in `X-Tenant-Id`.
    """
    await require_internal_key(x_internal_api_key)
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is required",
        )
    return TenantContext(tenant_id=tenant_id)
