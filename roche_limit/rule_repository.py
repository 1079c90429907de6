"""Combined repository for IP rules and API keys."""

from __future__ import annotations

import os

from .api_keys import ApiKeyStore
from .ip_rules import IpRuleStore


class RuleRepository(IpRuleStore, ApiKeyStore):
    """Access to IP rules, their service levels and API keys of one database."""

    def __init__(self, database_path: str | os.PathLike[str]) -> None:
        self.database_path = database_path