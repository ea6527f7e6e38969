"""mapflow - configuration-driven data mapping and flow orchestration.

Tables, mappings, steps and flows are declared independently; the engine
resolves each mapping's effective rules, plans the flow's steps into a
dependency graph and runs them against database, object-store, FTP and
local-filesystem connectors, recording every run in a durable ledger.
"""

__version__ = "0.4.0"
