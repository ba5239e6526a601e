from dataclasses import dataclass


@dataclass
class SuperAdminContext:
    """Identity context for operator requests. Operates above the FIC account layer."""
    super_admin_id: str
    email: str
