"""
Data store access for the inbound pipeline and the user-facing API.

All tenant data goes through an OrgStore obtained from DataStore.for_org().
The scope object adds the org_id filter to every read and stamps it on every
write, so a row belonging to another organization is unreachable through it
even by direct id. The only unscoped query is the alias lookup that decides
which organization an inbound email belongs to.

Atomicity relies on the Postgres unique constraints:
  provider_logs (org_id, message_id)     idempotency ledger
  merchant_map  (org_id, merchant_name)  learned mappings
  rate_limits   (org_id, endpoint, window_start) via check_rate_limit()
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from postgrest.exceptions import APIError

from app.errors import StoreError

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class OrgStore(ABC):
    """Storage operations bound to a single organization."""

    def __init__(self, org_id: str):
        self.org_id = org_id

    # -- idempotency ledger ------------------------------------------------

    @abstractmethod
    def claim_message(self, entry: dict) -> tuple[dict, bool]:
        """
        Insert a provider_logs row unless (org_id, message_id) already exists.

        Returns (row, created). When created is False, row is the existing
        entry. Must be atomic: two concurrent claims for the same message
        yield exactly one created=True.
        """

    @abstractmethod
    def complete_message(self, message_id: str, fields: dict) -> Optional[dict]:
        """Write the outcome of a claimed message (success, error_message, processing_time_ms)."""

    @abstractmethod
    def release_message(self, message_id: str) -> None:
        """Drop a claim whose processing did not finish so the provider's retry runs again."""

    @abstractmethod
    def get_provider_log(self, message_id: str) -> Optional[dict]: ...

    @abstractmethod
    def list_provider_logs(self, limit: int = 50) -> list[dict]: ...

    # -- emails ------------------------------------------------------------

    @abstractmethod
    def insert_email(self, row: dict) -> dict: ...

    @abstractmethod
    def update_email(self, email_id: str, fields: dict) -> Optional[dict]: ...

    @abstractmethod
    def get_email(self, email_id: str) -> Optional[dict]: ...

    @abstractmethod
    def get_email_by_message_id(self, message_id: str) -> Optional[dict]: ...

    # -- transactions ------------------------------------------------------

    @abstractmethod
    def insert_transaction(self, row: dict) -> dict: ...

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[dict]: ...

    @abstractmethod
    def get_transaction_by_email(self, email_id: str) -> Optional[dict]: ...

    @abstractmethod
    def update_transaction(self, transaction_id: str, fields: dict) -> Optional[dict]: ...

    @abstractmethod
    def list_transactions(self, limit: int = 50, offset: int = 0) -> list[dict]: ...

    # -- merchant map ------------------------------------------------------

    @abstractmethod
    def upsert_merchant_mapping(self, row: dict) -> dict:
        """Insert or update on (org_id, merchant_name)."""

    @abstractmethod
    def get_merchant_mapping(self, merchant_name: str) -> Optional[dict]: ...

    @abstractmethod
    def list_merchant_mappings(self) -> list[dict]: ...

    @abstractmethod
    def delete_merchant_mapping(self, merchant_name: str) -> bool: ...

    # -- rate limiting / membership ----------------------------------------

    @abstractmethod
    def hit_rate_limit(self, endpoint: str, max_requests: int, window_minutes: int) -> bool:
        """Count one request in the current window. Returns False when over the limit."""

    @abstractmethod
    def is_member(self, user_id: str) -> bool: ...


class DataStore(ABC):
    """Entry point: alias resolution plus per-organization scopes."""

    @abstractmethod
    def resolve_alias(self, alias_email: str) -> Optional[dict]:
        """Return the inbox_aliases row for alias_email, or None."""

    @abstractmethod
    def for_org(self, org_id: str) -> OrgStore: ...


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------

def _is_unique_violation(exc: APIError) -> bool:
    return getattr(exc, "code", None) == UNIQUE_VIOLATION


def _first(result) -> Optional[dict]:
    return result.data[0] if result.data else None


class SupabaseOrgStore(OrgStore):

    def __init__(self, client, org_id: str):
        super().__init__(org_id)
        self.client = client

    def _table(self, name: str):
        return self.client.table(name)

    def _insert(self, table: str, row: dict) -> dict:
        result = self._table(table).insert({**row, "org_id": self.org_id}).execute()
        if not result.data:
            raise StoreError(f"Insert into {table} returned no row")
        return result.data[0]

    # -- idempotency ledger ------------------------------------------------

    def claim_message(self, entry: dict) -> tuple[dict, bool]:
        try:
            return self._insert("provider_logs", entry), True
        except APIError as exc:
            if not _is_unique_violation(exc):
                raise StoreError(f"Failed to write provider log: {exc}") from exc

        existing = self.get_provider_log(entry["message_id"])
        if existing is None:
            # Conflict reported but the row is not visible: treat as a store fault
            raise StoreError(
                f"provider_logs conflict for message {entry['message_id']!r} but no row found"
            )
        return existing, False

    def complete_message(self, message_id: str, fields: dict) -> Optional[dict]:
        try:
            result = (
                self._table("provider_logs")
                .update(fields)
                .eq("org_id", self.org_id)
                .eq("message_id", message_id)
                .execute()
            )
        except APIError as exc:
            raise StoreError(f"Failed to record provider log outcome: {exc}") from exc
        return _first(result)

    def release_message(self, message_id: str) -> None:
        try:
            (
                self._table("provider_logs")
                .delete()
                .eq("org_id", self.org_id)
                .eq("message_id", message_id)
                .execute()
            )
        except APIError as exc:
            raise StoreError(f"Failed to release provider log: {exc}") from exc

    def get_provider_log(self, message_id: str) -> Optional[dict]:
        result = (
            self._table("provider_logs")
            .select("*")
            .eq("org_id", self.org_id)
            .eq("message_id", message_id)
            .execute()
        )
        return _first(result)

    def list_provider_logs(self, limit: int = 50) -> list[dict]:
        result = (
            self._table("provider_logs")
            .select("*")
            .eq("org_id", self.org_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data or []

    # -- emails ------------------------------------------------------------

    def insert_email(self, row: dict) -> dict:
        try:
            return self._insert("emails", row)
        except APIError as exc:
            raise StoreError(f"Failed to store email: {exc}") from exc

    def update_email(self, email_id: str, fields: dict) -> Optional[dict]:
        result = (
            self._table("emails")
            .update(fields)
            .eq("id", email_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    def get_email(self, email_id: str) -> Optional[dict]:
        result = (
            self._table("emails")
            .select("*")
            .eq("id", email_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    def get_email_by_message_id(self, message_id: str) -> Optional[dict]:
        result = (
            self._table("emails")
            .select("*")
            .eq("message_id", message_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    # -- transactions ------------------------------------------------------

    def insert_transaction(self, row: dict) -> dict:
        try:
            return self._insert("transactions", row)
        except APIError as exc:
            raise StoreError(f"Failed to store transaction: {exc}") from exc

    def get_transaction(self, transaction_id: str) -> Optional[dict]:
        result = (
            self._table("transactions")
            .select("*")
            .eq("id", transaction_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    def get_transaction_by_email(self, email_id: str) -> Optional[dict]:
        result = (
            self._table("transactions")
            .select("*")
            .eq("email_id", email_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    def update_transaction(self, transaction_id: str, fields: dict) -> Optional[dict]:
        result = (
            self._table("transactions")
            .update(fields)
            .eq("id", transaction_id)
            .eq("org_id", self.org_id)
            .execute()
        )
        return _first(result)

    def list_transactions(self, limit: int = 50, offset: int = 0) -> list[dict]:
        result = (
            self._table("transactions")
            .select("*")
            .eq("org_id", self.org_id)
            .order("date", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return result.data or []

    # -- merchant map ------------------------------------------------------

    def upsert_merchant_mapping(self, row: dict) -> dict:
        try:
            result = (
                self._table("merchant_map")
                .upsert({**row, "org_id": self.org_id}, on_conflict="org_id,merchant_name")
                .execute()
            )
        except APIError as exc:
            raise StoreError(f"Failed to upsert merchant mapping: {exc}") from exc
        if not result.data:
            raise StoreError("Merchant mapping upsert returned no row")
        return result.data[0]

    def get_merchant_mapping(self, merchant_name: str) -> Optional[dict]:
        result = (
            self._table("merchant_map")
            .select("*")
            .eq("org_id", self.org_id)
            .eq("merchant_name", merchant_name)
            .execute()
        )
        return _first(result)

    def list_merchant_mappings(self) -> list[dict]:
        result = (
            self._table("merchant_map")
            .select("*")
            .eq("org_id", self.org_id)
            .order("updated_at", desc=True)
            .execute()
        )
        return result.data or []

    def delete_merchant_mapping(self, merchant_name: str) -> bool:
        result = (
            self._table("merchant_map")
            .delete()
            .eq("org_id", self.org_id)
            .eq("merchant_name", merchant_name)
            .execute()
        )
        return bool(result.data)

    # -- rate limiting / membership ----------------------------------------

    def hit_rate_limit(self, endpoint: str, max_requests: int, window_minutes: int) -> bool:
        result = self.client.rpc("check_rate_limit", {
            "org_uuid": self.org_id,
            "endpoint_name": endpoint,
            "max_requests": max_requests,
            "window_minutes": window_minutes,
        }).execute()
        return bool(result.data)

    def is_member(self, user_id: str) -> bool:
        result = (
            self._table("org_members")
            .select("org_id")
            .eq("org_id", self.org_id)
            .eq("user_id", user_id)
            .execute()
        )
        return bool(result.data)


class SupabaseStore(DataStore):
    """DataStore backed by the Supabase service-role client."""

    def __init__(self, client):
        if client is None:
            raise StoreError(
                "Supabase is not configured (set SUPABASE_URL and SUPABASE_SERVICE_KEY)"
            )
        self.client = client

    def resolve_alias(self, alias_email: str) -> Optional[dict]:
        # inbox_aliases.alias_email is stored lowercase
        result = (
            self.client.table("inbox_aliases")
            .select("alias_email, org_id, is_active")
            .eq("alias_email", alias_email.strip().lower())
            .execute()
        )
        return _first(result)

    def for_org(self, org_id: str) -> OrgStore:
        return SupabaseOrgStore(self.client, org_id)
