from dataclasses import dataclass


@dataclass
class TenantContext:
    """Identity context for tenant-scoped requests."""
    tenant_id: str
    auth_method: str = "internal_api_key"
