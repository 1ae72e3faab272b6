from certchain.systems.roles.resolver import ResolvedRole, RoleResolver

__all__ = ["ResolvedRole", "RoleResolver"]
