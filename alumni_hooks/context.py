"""
Request-scoped caller context.

SECURITY: Every service call takes a RequestContext and MUST filter by
its tenant_id. Failure to do so will result in data leakage between tenants.
"""
from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, and in which tenant."""
    user_id: str
    tenant_id: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
