from certchain.systems.ledger.gateway import LedgerGateway, Web3LedgerGateway
from certchain.systems.ledger.memory import InMemoryLedger

__all__ = ["LedgerGateway", "Web3LedgerGateway", "InMemoryLedger"]
