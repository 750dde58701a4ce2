"""CLI command modules.

Top-level commands:
- init, status, environments, validate-env: project and configuration
- seed, clone, drop: local templates and clones
- deploy: remote deployment

Command Groups:
- backup: backup creation, listing, verification, restore and retention
- remote: remote database configuration
"""

from .backup import app as backup_app
from .deploy import deploy
from .project import environments, init, status, validate_env
from .remote import app as remote_app
from .seed import clone, drop, seed

__all__ = [
    "backup_app",
    "clone",
    "deploy",
    "drop",
    "environments",
    "init",
    "remote_app",
    "seed",
    "status",
    "validate_env",
]
