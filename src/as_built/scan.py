from __future__ import annotations

import asyncio
import time
from datetime import date
from typing import TYPE_CHECKING

from as_built.config import DOCUMENT_FILENAMES, SIZE_THRESHOLD_BYTES, DocumentKind, LlmProvider, ScanStatus
from as_built.exceptions import (
    ContextWindowExceededError,
    DeadlineExceededError,
    EmptyModelOutputError,
    NoFilesAfterFilteringError,
    ScanNotFoundError,
)
from as_built.file_manipulation import collect_files
from as_built.llm import LlmError, LlmErrorCode
from as_built.logging import logger
from as_built.models import ScanOutputPayload, ScanRecord, TokenEstimate, TokenUsage
from as_built.output_parsing import parse_output
from as_built.prompt import assemble_prompt, build_drift_prompt
from as_built.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, Deadline, deadline_message, with_retry
from as_built.tokens import TokenEstimator

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from as_built.llm import LlmGateway
    from as_built.models import CollectionResult, LlmResponse, ParsedOutput, ScanRequest
    from as_built.store import ScanStore

PROVIDER_LABELS: dict[LlmProvider, str] = {
    LlmProvider.GEMINI: "Google Gemini",
    LlmProvider.CLAUDE: "Anthropic Claude",
    LlmProvider.OPENAI: "OpenAI",
}


# Share of the deadline kept free after the drift pass so the outputs can still be saved.
SAVE_RESERVE_RATIO = 0.2
SAVE_RESERVE_MAX_SECONDS = 5.0


def save_reserve(deadline_seconds: float) -> float:
    """Seconds the drift pass leaves unused at the end of the scan's budget."""
    return min(SAVE_RESERVE_MAX_SECONDS, deadline_seconds * SAVE_RESERVE_RATIO)


def user_facing_llm_message(err: LlmError, attempts: int = DEFAULT_MAX_ATTEMPTS) -> str:
    """Turn a classified model failure into an actionable sentence for the user.

    Args:
        err (LlmError): the classified failure
        attempts (int): how many calls were made before giving up

    Returns:
        str: provider-specific guidance
    """
    name = PROVIDER_LABELS.get(err.provider, str(err.provider))
    match err.code:
        case LlmErrorCode.AUTH_ERROR:
            return f"Authentication failed with {name}. Please check that the API key is valid."
        case LlmErrorCode.RATE_LIMIT:
            return (
                f"Rate limited by {name} after {attempts} attempts. "
                "Please wait a few minutes and try again."
            )
        case LlmErrorCode.TIMEOUT:
            return (
                f"Request to {name} timed out after {attempts} attempts. "
                "Try Gemini (largest context window) or target a subdirectory to reduce input size."
            )
        case LlmErrorCode.SERVER_ERROR:
            return (
                f"{name} is experiencing server issues after {attempts} attempts. "
                "Please try again later or switch to a different provider."
            )
        case LlmErrorCode.CONTENT_FILTER:
            return (
                f"{name} content filter blocked the request. "
                "The codebase may contain content that triggered safety filters."
            )
        case LlmErrorCode.CONTEXT_LENGTH:
            return (
                f"The codebase exceeds {name}'s context window. "
                "Try Gemini (largest window at 1M tokens) or target a subdirectory."
            )
        case LlmErrorCode.INVALID_REQUEST:
            return f"Invalid request to {name}: {err.message}"
        case _:
            return f"LLM call failed: {err.message}"


def context_exceeded_message(estimate: TokenEstimate, provider: LlmProvider) -> str:
    """Explain a pre-flight overflow and how to get under the limit."""
    suggestion = (
        "Switch to Google Gemini (1M token context window) or use"
        if provider is not LlmProvider.GEMINI
        else "Use"
    )
    return (
        f"Context window exceeded: ~{estimate.estimated_tokens:,} tokens estimated, "
        f"but {provider}'s limit is {estimate.context_window:,} tokens. "
        f"{suggestion} subdirectory targeting to scan a smaller portion of the codebase."
    )


def near_limit_message(estimate: TokenEstimate, provider: LlmProvider) -> str:
    """Warn that the prompt leaves little room for the model's answer."""
    return (
        f"⚠ Warning: prompt uses ~{estimate.utilization_ratio:.0%} of {provider}'s context window. "
        "Consider switching to Gemini or targeting a subdirectory if the scan fails."
    )


class ScanOrchestrator:
    """Drives one scan from ``pending`` to a terminal state.

    Collection, prompt assembly, the context pre-check, the model call with
    retry, parsing, the optional drift pass and persistence run in sequence,
    each reporting to the record's progress log. ``run`` never raises: any
    failure ends in a ``failed`` record.
    """

    def __init__(
        self,
        store: ScanStore,
        gateway: LlmGateway,
        estimator: TokenEstimator | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], date] = date.today,
        monotonic: Callable[[], float] = time.monotonic,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.estimator = estimator or TokenEstimator(gateway.provider_table)
        self.sleep = sleep
        self.clock = clock
        self.monotonic = monotonic
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    async def log(self, scan_id: str, line: str) -> None:
        """Append ``line`` to the progress log and mirror it as a structured event."""
        await self.store.append_progress(scan_id, line)
        logger.info("scan_progress", scan_id=scan_id, line=line)

    async def run(self, request: ScanRequest) -> ScanRecord:
        """Run the scan described by ``request`` and return its final record.

        Args:
            request (ScanRequest): what to scan and how

        Returns:
            ScanRecord: the record in ``completed``, ``partial`` or ``failed``
        """
        scan_id = request.scan_id
        deadline = Deadline(request.deadline_seconds, clock=self.monotonic)
        try:
            await self._ensure_record(request)
            async with asyncio.timeout(request.deadline_seconds):
                await self._process(request, deadline)
        except LlmError as e:
            await self._fail(scan_id, user_facing_llm_message(e, self.max_attempts))
        except TimeoutError:
            await self._fail(scan_id, deadline_message(request.deadline_seconds))
        except Exception as e:  # noqa: BLE001
            await self._fail(scan_id, str(e) or f"Unexpected {type(e).__name__} during scan")
        return await self._final_record(scan_id)

    async def _ensure_record(self, request: ScanRequest) -> None:
        try:
            await self.store.get(request.scan_id)
        except ScanNotFoundError:
            await self.store.create_pending(
                request.scan_id,
                project_name=request.project_name,
                provider=request.provider,
                tier=request.tier,
            )

    async def _fail(self, scan_id: str, message: str) -> None:
        logger.error("Scan failed", scan_id=scan_id, error=message)
        try:
            record = await self.store.get(scan_id)
            if record.status.is_terminal:
                return
            await self.log(scan_id, f"✗ Scan failed: {message}")
            await self.store.update_status(scan_id, ScanStatus.FAILED, message)
        except Exception:
            logger.exception("Could not record scan failure", scan_id=scan_id)

    async def _final_record(self, scan_id: str) -> ScanRecord:
        try:
            return await self.store.get(scan_id)
        except Exception as e:
            logger.exception("Could not read back scan record", scan_id=scan_id)
            return ScanRecord(scan_id=scan_id, status=ScanStatus.FAILED, error_message=str(e))

    async def _call_model(
        self,
        request: ScanRequest,
        prompt: str,
        *,
        label: str,
        deadline: Deadline,
    ) -> LlmResponse:
        async def attempt() -> LlmResponse:
            if deadline.expired:
                raise deadline.error()
            return await self.gateway.generate(
                request.provider,
                request.tier,
                prompt,
                request.credential,
                timeout=deadline.remaining(),
            )

        async def log(line: str) -> None:
            await self.log(request.scan_id, line)

        return await with_retry(
            attempt,
            label=label,
            log=log,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
            deadline=deadline,
        )

    async def _collect(self, request: ScanRequest) -> CollectionResult:
        scan_id = request.scan_id
        await self.log(scan_id, "Collecting files...")
        collection = collect_files(request.root, request.subdirectory)
        if not collection.files:
            raise NoFilesAfterFilteringError(root=request.root, excluded_count=collection.excluded_count)
        size_mb = collection.total_size_bytes / SIZE_THRESHOLD_BYTES
        await self.log(
            scan_id,
            f"Collecting files... {collection.file_count} files found ({collection.excluded_count} excluded)",
        )
        await self.log(scan_id, f"Filtering complete. {collection.file_count} files remaining ({size_mb:.1f} MB)")
        return collection

    async def _drift_pass(
        self,
        request: ScanRequest,
        parsed: ParsedOutput,
        collection: CollectionResult,
        deadline: Deadline,
    ) -> LlmResponse | None:
        scan_id = request.scan_id
        await self.log(scan_id, "Drift section missing. Running dedicated drift analysis...")
        prompt = build_drift_prompt(
            request.project_name,
            request.reference_content or "",
            parsed.manifest_doc,
            collection.tree,
            scan_date=self.clock(),
        )
        budget = deadline.remaining() - save_reserve(request.deadline_seconds)
        if budget <= 0:
            await self.log(scan_id, "⚠ Drift analysis skipped: no time left before the scan deadline.")
            return None
        try:
            async with asyncio.timeout(budget):
                response = await self._call_model(request, prompt, label="Drift analysis", deadline=deadline)
        except (TimeoutError, DeadlineExceededError):
            logger.warning("Drift analysis ran out of time", scan_id=scan_id, budget=budget)
            await self.log(scan_id, "⚠ Drift analysis failed: it did not finish before the scan deadline.")
            return None
        except Exception as e:  # noqa: BLE001
            await self.log(scan_id, f"⚠ Drift analysis failed: {e}")
            return None
        if not response.text.strip():
            await self.log(scan_id, "⚠ Drift analysis failed: the model returned an empty document.")
            return None
        await self.log(scan_id, "Drift analysis complete.")
        return response

    async def _process(self, request: ScanRequest, deadline: Deadline) -> None:
        scan_id = request.scan_id
        provider, tier = request.provider, request.tier
        expect_drift = request.expects_drift

        await self.store.update_status(scan_id, ScanStatus.PROCESSING)
        collection = await self._collect(request)

        await self.log(scan_id, "Assembling prompt...")
        prompt = assemble_prompt(
            collection.files,
            collection.tree,
            request.project_name,
            expect_drift,
            request.reference_content,
            scan_date=self.clock(),
        )
        estimate = self.estimator.check_limit(prompt, provider, tier)
        await self.log(scan_id, f"Assembling prompt... ~{estimate.estimated_tokens:,} tokens")
        if estimate.exceeds_limit:
            raise ContextWindowExceededError(
                estimated_tokens=estimate.estimated_tokens,
                context_window=estimate.context_window,
                message=context_exceeded_message(estimate, provider),
            )
        if estimate.is_near_limit:
            await self.log(scan_id, near_limit_message(estimate, provider))

        await self.log(scan_id, f"Sending to {provider} ({tier})...")
        response = await self._call_model(request, prompt, label="LLM call", deadline=deadline)
        usage: TokenUsage = response.token_usage
        await self.log(scan_id, f"LLM response received ({usage.total_tokens:,} tokens used)")
        if response.was_truncated:
            await self.log(scan_id, "⚠ LLM output was truncated (hit output token limit). Salvaging partial output.")

        await self.log(scan_id, "Parsing output...")
        parsed = parse_output(response.text, expect_drift)
        for warning in parsed.warnings:
            await self.log(scan_id, f"⚠ {warning}")
        if not parsed.manifest_doc and not parsed.human_doc:
            raise EmptyModelOutputError

        drift_doc = parsed.drift_doc
        if expect_drift and not drift_doc and parsed.manifest_doc:
            drift_response = await self._drift_pass(request, parsed, collection, deadline)
            if drift_response is not None:
                usage += drift_response.token_usage
                drift_doc = drift_response.text.strip()

        documents = {
            DocumentKind.AGENT: parsed.manifest_doc,
            DocumentKind.HUMAN: parsed.human_doc,
            DocumentKind.DRIFT: drift_doc,
        }
        for kind, content in documents.items():
            if content:
                await self.log(scan_id, f"Generating {DOCUMENT_FILENAMES[kind]}...")

        missing = [
            DOCUMENT_FILENAMES[kind]
            for kind, content in documents.items()
            if not content and (kind is not DocumentKind.DRIFT or expect_drift)
        ]
        partial = parsed.partial or response.was_truncated or (expect_drift and not drift_doc)
        if partial:
            if response.was_truncated or parsed.truncated:
                reason = "LLM output was truncated before completion"
            elif missing:
                reason = "Some output sections could not be parsed"
            else:
                reason = "PRD_DRIFT.md came from a separate drift analysis pass"
            missing_note = f" Missing: {', '.join(missing)}." if missing else ""
            await self.log(
                scan_id,
                f"⚠ Scan partially completed: {reason}.{missing_note} You can re-run this scan to try again.",
            )

        payload = ScanOutputPayload(
            manifest_doc=parsed.manifest_doc,
            human_doc=parsed.human_doc,
            drift_doc=drift_doc or None,
            project_name=request.project_name,
            file_count=collection.file_count,
            token_usage=usage,
        )
        await self.log(scan_id, "Scan partially complete. Partial results saved." if partial else "Scan complete!")
        await self.store.save_outputs(scan_id, payload, ScanStatus.PARTIAL if partial else ScanStatus.COMPLETED)
