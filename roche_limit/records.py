"""Record types and change sets used by the auth stores."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AddressFamily(str, Enum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"


class IpRuleType(str, Enum):
    SINGLE = "single"
    CIDR = "cidr"


class IpRuleEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class _Unset(Enum):
    UNSET = "unset"

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset.UNSET
"""Marks a field of an update that is left unchanged (as opposed to ``None``)."""


@dataclass(frozen=True)
class IpRuleRecord:
    id: int
    value_text: str
    address_family: AddressFamily
    rule_type: IpRuleType
    prefix_length: int | None
    effect: IpRuleEffect
    enabled: bool
    note: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class IpServiceLevelRecord:
    id: int
    ip_rule_id: int
    service_name: str
    access_level: int
    enabled: bool
    note: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ApiKeyRecord:
    id: int
    key_hash: str
    key_lookup_hash: str
    key_prefix: str | None
    service_name: str | None
    access_level: int
    enabled: bool
    expires_at: str | None
    last_used_at: str | None
    last_used_ip: str | None
    last_failed_at: str | None
    failed_attempts: int
    note: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class LoginFailureRecord:
    id: int
    client_ip: str
    username: str
    failure_count: int
    last_failed_at: str
    locked_until: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class UserSessionRecord:
    id: int
    session_token_hash: str
    user_id: int
    absolute_expires_at: str
    idle_expires_at: str
    last_seen_at: str
    last_rotated_at: str
    revoked_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True, kw_only=True)
class NewIpRule:
    value_text: str
    address_family: AddressFamily
    rule_type: IpRuleType
    effect: IpRuleEffect
    prefix_length: int | None = None
    note: str | None = None


@dataclass(frozen=True, kw_only=True)
class NewIpServiceLevel:
    ip_rule_id: int
    service_name: str
    access_level: int
    note: str | None = None


@dataclass(frozen=True, kw_only=True)
class UpdateIpRule:
    """Fields of an IP rule to change; ``None`` (or ``UNSET`` for note) keeps a field."""

    value_text: str | None = None
    address_family: AddressFamily | None = None
    rule_type: IpRuleType | None = None
    prefix_length: int | None = None
    effect: IpRuleEffect | None = None
    note: str | None | _Unset = UNSET

    def has_changes(self) -> bool:
        """Return whether at least one field would change."""
        return (
            any(
                value is not None
                for value in (
                    self.value_text,
                    self.address_family,
                    self.rule_type,
                    self.prefix_length,
                    self.effect,
                )
            )
            or self.note is not UNSET
        )


@dataclass(frozen=True, kw_only=True)
class NewApiKeyRecord:
    key_hash: str
    key_lookup_hash: str
    access_level: int
    key_prefix: str | None = None
    service_name: str | None = None
    expires_at: str | None = None
    note: str | None = None


@dataclass(frozen=True, kw_only=True)
class UpdateApiKeyRecord:
    """Fields of an API key to change; ``UNSET`` (or ``None`` for access_level) keeps a field."""

    service_name: str | None | _Unset = UNSET
    access_level: int | None = None
    expires_at: str | None | _Unset = UNSET
    note: str | None | _Unset = UNSET

    def has_changes(self) -> bool:
        """Return whether at least one field would change."""
        return self.access_level is not None or any(
            value is not UNSET for value in (self.service_name, self.expires_at, self.note)
        )