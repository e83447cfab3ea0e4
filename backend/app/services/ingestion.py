"""
Inbound email ingestion pipeline.

  RECEIVED -> VERIFIED -> PARSED -> TENANT_RESOLVED -> RATE_CHECKED
           -> DEDUPED -> EXTRACTED -> STORED

Any failure before DEDUPED ends in REJECTED and is raised to the router,
which maps the exception type to an HTTP status. A message already in the
idempotency ledger ends in DUPLICATE and is acknowledged with the ids of the
first run.

The ledger row is claimed after the rate check. A message turned away by the
rate limiter is therefore not recorded, and the provider's retry is processed
normally once the window has room.

The claim starts out as success=false and gets exactly one outcome write when
the message reaches STORED (success, or the extraction error, plus the total
processing time). If a store write or anything unexpected fails after the
claim, the claim is released and the error propagates, so the provider's
retry runs the message again and picks up the email row already written.
"""

import asyncio
import logging
import time
from typing import Optional

from starlette.concurrency import run_in_threadpool

from app.errors import (
    ExtractionFailure,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TenantResolutionError,
    VerificationError,
)
from app.models.email_intake import (
    EmailStatus,
    IngestionResult,
    IngestionStatus,
    ProviderLogEntry,
)
from app.models.inbound_email import InboundEmail, RawInboundRequest
from app.services.extractor import Extractor
from app.services.inbound_email_adapter import InboundEmailProvider, generate_correlation_id
from app.services.merchant_map import MerchantMapService
from app.services.rate_limiter import RateLimiter
from app.services.store import DataStore, OrgStore

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "message already processed"


def _log_stage(stage: IngestionStatus, correlation_id: str, detail: str = "") -> None:
    suffix = f" {detail}" if detail else ""
    logger.info(f"[{correlation_id}] inbound {stage.value}{suffix}")


class IngestionPipeline:

    def __init__(
        self,
        store: DataStore,
        extractor: Extractor,
        merchant_map: MerchantMapService,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.merchant_map = merchant_map
        self.rate_limiter = rate_limiter or RateLimiter()

    async def ingest(self, provider: InboundEmailProvider, raw: RawInboundRequest) -> IngestionResult:
        """
        Run one inbound request through the pipeline.

        Raises:
            VerificationError, ParsingError, ProviderTimeoutError,
            TenantResolutionError, RateLimitError: request rejected.
            StoreError: the data store failed.
        """
        correlation_id = raw.correlation_id or generate_correlation_id()
        if not raw.correlation_id:
            raw = raw.model_copy(update={"correlation_id": correlation_id})

        started = time.perf_counter()
        _log_stage(IngestionStatus.RECEIVED, correlation_id, f"provider={provider.name} bytes={len(raw.body)}")

        try:
            verified = await self._bounded(provider.verify(raw), provider, "verify")
            if not verified:
                raise VerificationError(provider.name, {"message": "Adapter rejected request"})
            _log_stage(IngestionStatus.VERIFIED, correlation_id)

            email = await self._bounded(provider.parse(raw), provider, "parse")
            _log_stage(IngestionStatus.PARSED, correlation_id, f"message_id={email.message_id}")

            org_id = self._resolve_tenant(email)
            scope = self.store.for_org(org_id)
            _log_stage(IngestionStatus.TENANT_RESOLVED, correlation_id, f"org={org_id}")

            self.rate_limiter.check(scope)
            _log_stage(IngestionStatus.RATE_CHECKED, correlation_id)
        except (ProviderError, TenantResolutionError, RateLimitError) as exc:
            _log_stage(IngestionStatus.REJECTED, correlation_id, f"{type(exc).__name__}: {exc}")
            raise

        entry = ProviderLogEntry(
            org_id=org_id,
            provider_name=provider.name,
            message_id=email.message_id,
            payload=email.metadata,
            success=False,
            correlation_id=correlation_id,
        )
        ledger_row, created = scope.claim_message(
            entry.model_dump(mode="json", exclude={"id", "created_at"})
        )

        if not created:
            return self._duplicate_result(scope, email, ledger_row, correlation_id, provider.name)

        _log_stage(IngestionStatus.DEDUPED, correlation_id, f"ledger={ledger_row.get('id')}")
        try:
            return await self._process_new_message(scope, email, correlation_id, provider.name, started)
        except Exception:
            self._release_claim(scope, email.message_id, correlation_id)
            raise

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    async def _bounded(awaitable, provider: InboundEmailProvider, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=provider.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(provider.name, operation, provider.timeout_ms)

    def _resolve_tenant(self, email: InboundEmail) -> str:
        alias = self.store.resolve_alias(email.alias)
        if not alias or not alias.get("is_active", True) or not alias.get("org_id"):
            raise TenantResolutionError(email.alias)
        return alias["org_id"]

    def _duplicate_result(
        self,
        scope: OrgStore,
        email: InboundEmail,
        ledger_row: dict,
        correlation_id: str,
        provider_name: str,
    ) -> IngestionResult:
        stored = scope.get_email_by_message_id(email.message_id)
        transaction = scope.get_transaction_by_email(stored["id"]) if stored else None

        _log_stage(
            IngestionStatus.DUPLICATE,
            correlation_id,
            f"first_seen_correlation_id={ledger_row.get('correlation_id')}",
        )
        return IngestionResult(
            status=IngestionStatus.DUPLICATE,
            message=DUPLICATE_MESSAGE,
            correlation_id=correlation_id,
            provider=provider_name,
            email_id=stored["id"] if stored else None,
            transaction_id=transaction["id"] if transaction else None,
            extracted=transaction is not None,
            duplicate=True,
        )

    async def _process_new_message(
        self,
        scope: OrgStore,
        email: InboundEmail,
        correlation_id: str,
        provider_name: str,
        started: float,
    ) -> IngestionResult:
        email_row = scope.get_email_by_message_id(email.message_id)
        transaction = None
        if email_row is None:
            email_row = scope.insert_email({
                "message_id": email.message_id,
                "provider": provider_name,
                "from_address": email.from_address,
                "to_address": email.to_address,
                "subject": email.subject,
                "text": email.text,
                "html": email.html,
                "received_at": email.received_at.isoformat(),
                "correlation_id": correlation_id,
                "status": EmailStatus.RECEIVED.value,
            })
        else:
            # Earlier attempt stopped after the email was written
            logger.info(f"[{correlation_id}] Resuming email {email_row['id']} from an interrupted attempt")
            transaction = scope.get_transaction_by_email(email_row["id"])
        email_id = email_row["id"]

        if transaction is None:
            try:
                receipt = await run_in_threadpool(self.extractor.extract, email)
            except ExtractionFailure as e:
                return self._extraction_failed(scope, email, email_id, correlation_id, provider_name, str(e), started)
            except Exception as e:
                logger.exception(f"[{correlation_id}] Extractor raised unexpectedly")
                return self._extraction_failed(scope, email, email_id, correlation_id, provider_name, str(e), started)

            receipt = self.merchant_map.apply_mapping(receipt, scope.org_id)
            _log_stage(IngestionStatus.EXTRACTED, correlation_id, f"confidence={receipt.confidence}")

            transaction = scope.insert_transaction({
                **receipt.model_dump(mode="json"),
                "email_id": email_id,
            })
        scope.update_email(email_id, {"status": EmailStatus.EXTRACTED.value})
        self._record_outcome(scope, email.message_id, started)

        _log_stage(IngestionStatus.STORED, correlation_id, f"transaction={transaction['id']}")
        return IngestionResult(
            status=IngestionStatus.STORED,
            message="email processed",
            correlation_id=correlation_id,
            provider=provider_name,
            email_id=email_id,
            transaction_id=transaction["id"],
            extracted=True,
        )

    def _extraction_failed(
        self,
        scope: OrgStore,
        email: InboundEmail,
        email_id: str,
        correlation_id: str,
        provider_name: str,
        error: str,
        started: float,
    ) -> IngestionResult:
        logger.warning(f"[{correlation_id}] Extraction failed for email {email_id}: {error}")
        scope.update_email(email_id, {
            "status": EmailStatus.FAILED.value,
            "error_message": error,
        })
        self._record_outcome(scope, email.message_id, started, error=error)
        _log_stage(IngestionStatus.STORED, correlation_id, "extracted=false")
        return IngestionResult(
            status=IngestionStatus.STORED,
            message="email stored; receipt extraction failed",
            correlation_id=correlation_id,
            provider=provider_name,
            email_id=email_id,
            extracted=False,
        )

    @staticmethod
    def _record_outcome(
        scope: OrgStore,
        message_id: str,
        started: float,
        error: Optional[str] = None,
    ) -> None:
        scope.complete_message(message_id, {
            "success": error is None,
            "error_message": error,
            "processing_time_ms": int((time.perf_counter() - started) * 1000),
        })

    @staticmethod
    def _release_claim(scope: OrgStore, message_id: str, correlation_id: str) -> None:
        logger.warning(f"[{correlation_id}] Processing interrupted; releasing ledger claim for {message_id}")
        try:
            scope.release_message(message_id)
        except Exception:
            # The original error is re-raised by the caller
            logger.exception(f"[{correlation_id}] Could not release ledger claim for {message_id}")
