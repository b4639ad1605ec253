from admin_roles.services.role_management import RoleManagementService

__all__ = ["RoleManagementService"]
