# roche_limit

Storage layer for an authentication gateway, built on the `sqlite3` module of
the standard library. It has no third-party dependencies.

It keeps:

- **IP rules**: allow and deny entries, single addresses or CIDR blocks, and
  an access level per service for each rule (`roche_limit.ip_rules.IpRuleStore`).
- **API keys**: stored key hashes with lookup hashes, optional prefixes,
  optional service binding, expiry, and success/failure tracking
  (`roche_limit.api_keys.ApiKeyStore`).
- `roche_limit.rule_repository.RuleRepository` combines both of the above
  on one database file.
- **User state**: sessions, login-failure records and CSRF tokens
  (`roche_limit.user_repository.UserRepository`).
- **Audit log**: an append-only `audit_events` table in which each row stores
  the hash of the row before it (`roche_limit.audit_repository.AuditRepository`).

Every store takes a database path and opens a fresh connection for each call.
Connections use WAL journaling, `synchronous = NORMAL`, foreign keys on and a
five-second busy timeout (`roche_limit.sqlite.SqliteConnection`).

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

### IP rules and service levels

```python
from roche_limit.rule_repository import RuleRepository
from roche_limit.records import (
    AddressFamily, IpRuleEffect, IpRuleType, NewIpRule, NewIpServiceLevel, UpdateIpRule,
)

repo = RuleRepository("auth.sqlite3")
rule_id = repo.insert_ip_rule(NewIpRule(
    value_text="10.0.0.0/8",
    address_family=AddressFamily.IPV4,
    rule_type=IpRuleType.CIDR,
    prefix_length=8,
    effect=IpRuleEffect.ALLOW,
))
repo.upsert_ip_service_level(
    NewIpServiceLevel(ip_rule_id=rule_id, service_name="*", access_level=1)
)

for rule in repo.list_ip_rules(IpRuleEffect.ALLOW):
    print(rule.id, rule.value_text, rule.prefix_length)

level = repo.find_ip_service_level(rule_id, "grafana")  # falls back to "*"
repo.update_ip_rule(rule_id, UpdateIpRule(note="office network"))
```

- `list_ip_rules` returns enabled rules of one effect, longest prefix first.
- `find_ip_service_level` prefers a level for the exact service over one for `"*"`.
- `find_allow_ip_rule_by_value` raises `StoreError` if more than one enabled
  allow rule has the same value.
- `delete_ip_rule` also deletes the rule's service levels.
- `compact_ip_ids` renumbers rules and service levels to 1..n in their
  current order, inside one transaction.

### API keys

```python
from roche_limit.api_keys import ApiKeyStore
from roche_limit.hash_util import sha256_hex
from roche_limit.records import NewApiKeyRecord, UpdateApiKeyRecord

keys = ApiKeyStore("auth.sqlite3")
key_id = keys.insert_api_key(NewApiKeyRecord(
    key_hash=sha256_hex("token"),
    key_lookup_hash=sha256_hex("token"),
    key_prefix="rl_demo",
    service_name="grafana",
    access_level=2,
    expires_at="2030-01-01 00:00:00",
))
found = keys.find_api_key(sha256_hex("token"), "grafana")
keys.note_api_key_success(key_id, "192.0.2.10")
keys.update_api_key(key_id, UpdateApiKeyRecord(expires_at=None))  # remove expiry
```

Every lookup (`find_api_key`, `find_api_key_by_prefix`, `list_api_keys`,
`get_api_key`) first disables enabled keys whose `expires_at` is at or before
`CURRENT_TIMESTAMP`; `disable_expired_api_keys` does only that step. A key
bound to the requested service wins over one with no service. Timestamps are
compared as text with SQLite's `CURRENT_TIMESTAMP`, so store them as
`YYYY-MM-DD HH:MM:SS` in UTC.

### Partial updates

`UpdateIpRule` and `UpdateApiKeyRecord` change only the fields that are set.
Fields that may be cleared to NULL default to `roche_limit.records.UNSET`, so
`note=None` clears a note while leaving `note` out keeps it. The other fields
are left alone when `None`. An update with no changes raises `StoreError`;
`has_changes()` tells you beforehand.

### Sessions, login failures and CSRF tokens

```python
from roche_limit.user_repository import UserRepository

users = UserRepository("auth.sqlite3")
session_id = users.insert_user_session(
    1, sha256_hex("token"), "2030-01-02 00:00:00", "2030-01-01 01:00:00", "2030-01-01 00:00:00"
)
session = users.find_active_user_session(sha256_hex("token"))
users.revoke_all_user_sessions(1)

users.upsert_login_failure("192.0.2.10", "alice", 3, "2030-01-01 00:15:00")
users.clear_login_failure("192.0.2.10", "alice")

users.insert_csrf_token("login", sha256_hex("token"), "192.0.2.10", "2030-01-01 00:10:00")
users.has_valid_csrf_token("login", sha256_hex("token"), "192.0.2.10")
```

`insert_csrf_token` first deletes tokens that have expired. `compact_user_ids`
renumbers users (with their credential, service-level and session
references), user service levels and sessions to 1..n.

### Audit log

```python
from roche_limit.audit_repository import AuditRepository, NewAuditEvent

audit = AuditRepository("auth.sqlite3")
audit.insert_event(NewAuditEvent(event_type="login_success", actor_type="user", result="success"))
result = audit.cleanup(retention_days=90, max_rows=100_000)
print(result.retention_deleted_rows, result.overflow_deleted_rows)
```

Each event is stored with a metadata JSON document built by
`normalized_metadata_json` (schema version, source, event group, the event's
fields, and the caller's `metadata_json` embedded verbatim under `details`).
Its `event_hash` is the SHA-256 of `canonical_hash_input`, which includes the
previous row's hash (or `ROOT` for the first row). `cleanup` deletes events
older than the retention period, trims the oldest rows so that the table holds
at most `max_rows` after the cleanup is itself recorded as an `audit_cleanup`
event, and returns the counts.

### Hashing

```python
from roche_limit.hash_util import sha256_hex, hmac_sha256_hex

sha256_hex("abc")
hmac_sha256_hex("secret", "message")
```

Both accept `str` (encoded as UTF-8) or `bytes` and return lowercase hex.

## Environment

- `ROCHE_LIMIT_VERBOSE`: `1`, `true`, `yes` or `on` (any case) writes trace
  lines to standard error. `roche_limit.debug_log.set_verbose_logging_enabled()`
  overrides it; passing `None` defers to the variable again.
- `ROCHE_LIMIT_AUDIT_AUTH_ALLOW`: `1` makes
  `roche_limit.audit_repository.audit_auth_allow_enabled()` return true.

Database failures are raised as `roche_limit.sqlite.StoreError`, a
`RuntimeError`.

## What this package does not do

- It does not create the database schema. The tables (`ip_rules`,
  `ip_service_levels`, `api_keys`, `users`, `user_credentials`,
  `user_service_levels`, `user_sessions`, `login_failures`, `csrf_tokens`,
  `audit_events`) must already exist.
- It does not manage user accounts: there is no way here to create, list,
  look up or delete users, set passwords or assign user service levels.
  `UserRepository` covers only sessions, login failures, CSRF tokens and id
  compaction.
- It makes no access decisions: it stores and returns rules and keys but
  does not match client addresses against them or verify keys.
- It has no server and no command-line tool.