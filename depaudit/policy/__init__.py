"""Exception policy store and loaders."""

from depaudit.core.models import ExceptionEntry, PolicyScope
from depaudit.policy.loader import load_policy, parse_deny_toml, parse_yaml_policy
from depaudit.policy.store import PolicyStore

__all__ = [
    "ExceptionEntry",
    "PolicyScope",
    "PolicyStore",
    "load_policy",
    "parse_deny_toml",
    "parse_yaml_policy",
]
