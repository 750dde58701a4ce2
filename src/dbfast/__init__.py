"""dbfast: environment-aware PostgreSQL template lifecycle and deployment.

Builds template databases from a tree of SQL files, clones them in
milliseconds and deploys environment-scoped state to remote databases with
backup and rollback. The public entry point is :class:`src.dbfast.engine.DbFast`.
"""
