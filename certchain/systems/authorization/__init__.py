from certchain.systems.authorization.gate import AuthorizationGate

__all__ = ["AuthorizationGate"]
