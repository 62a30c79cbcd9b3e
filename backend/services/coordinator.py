# services/coordinator.py
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from models.upload_models import (
    ETag,
    PartSizePolicy,
    PartState,
    PartStatus,
    PresignedToken,
    SessionStatus,
    UploadSession,
    utcnow,
)
from services import part_hasher
from services.byte_source import ByteSource
from services.errors import (
    HashMismatch,
    InvalidPolicy,
    MultipartError,
    OutOfRange,
    PartFailed,
    PartInFlight,
    SessionClosed,
    TokenInvalid,
)
from services.etag import session_etag
from services.partitioner import partition
from services.presign import PresignedUrlSimulator
from services.transport import SimulatedTransport, Transport

logger = logging.getLogger(__name__)


class _Discarded(Exception):
    """An in-flight attempt observed session cancellation"""


class UploadCoordinator:
    """Drives one payload through the multipart upload state machine.

    Part states live in ``session.parts`` keyed by part number. Each part has
    its own lock, held for the whole time a submission owns the part, so at
    most one worker is ever in flight for a part number. A session-wide
    semaphore bounds how many parts transfer at once; submissions beyond the
    limit wait for a slot in arrival order.
    """

    def __init__(
        self,
        source: ByteSource,
        policy: Optional[PartSizePolicy] = None,
        presigner: Optional[PresignedUrlSimulator] = None,
        transport: Optional[Transport] = None,
        max_retries: int = 3,
        concurrency_limit: int = 4,
        token_ttl_seconds: int = 3600,
        session_id: Optional[str] = None,
    ):
        if max_retries < 0:
            raise InvalidPolicy(f"max_retries must be >= 0, got {max_retries}")
        if concurrency_limit < 1:
            raise InvalidPolicy(f"concurrency_limit must be >= 1, got {concurrency_limit}")

        policy = policy or PartSizePolicy()
        # partition first so a bad policy never creates part state
        specs = partition(len(source), policy)

        self.source = source
        self.specs = {spec.part_number: spec for spec in specs}
        self.presigner = presigner or PresignedUrlSimulator()
        self.transport = transport or SimulatedTransport()
        self.max_retries = max_retries
        self.concurrency_limit = concurrency_limit
        self.token_ttl_seconds = token_ttl_seconds

        self.session = UploadSession(
            session_id=session_id or str(uuid4()),
            part_size_policy=policy,
            payload_size=len(source),
            parts={
                spec.part_number: PartState(
                    part_number=spec.part_number, offset=spec.offset, length=spec.length
                )
                for spec in specs
            },
        )
        self.transitions: List[Tuple[int, PartStatus, PartStatus]] = []

        self._slots = asyncio.Semaphore(concurrency_limit)
        self._owners: Dict[int, asyncio.Lock] = {n: asyncio.Lock() for n in self.specs}
        self._transfers: Dict[int, int] = {n: 0 for n in self.specs}
        self._cancelled = asyncio.Event()

        logger.info(
            "Initiated session %s: %s bytes in %s part(s)",
            self.session.session_id, len(source), len(specs),
        )

    @classmethod
    def resume(cls, previous: UploadSession, source: ByteSource, **kwargs) -> "UploadCoordinator":
        """Start a new session for the same payload, keeping every uploaded
        part of ``previous`` whose digest still matches the source bytes."""
        if previous.status == SessionStatus.COMPLETED:
            raise SessionClosed(f"Session {previous.session_id} is already completed")
        if previous.payload_size != len(source):
            raise InvalidPolicy(
                f"Payload is {len(source)} bytes but session {previous.session_id} "
                f"was for {previous.payload_size} bytes"
            )

        coordinator = cls(source, previous.part_size_policy, **kwargs)
        session = coordinator.session
        session.resumed_from = previous.session_id

        carried = 0
        for number, old in previous.parts.items():
            spec = coordinator.specs.get(number)
            if spec is None or old.status != PartStatus.UPLOADED or old.digest is None:
                continue
            data = source.part(spec)
            if (old.offset, old.length) != (spec.offset, spec.length) or part_hasher.digest(data) != old.digest:
                continue
            session.parts[number] = old.model_copy()
            buffer = previous.received.get(number)
            session.received[number] = bytearray(buffer if buffer is not None else data)
            coordinator._transfers[number] = old.attempt + 1
            carried += 1

        logger.info(
            "Resumed session %s as %s with %s of %s part(s) already uploaded",
            previous.session_id, session.session_id, carried, session.part_count,
        )
        return coordinator

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def snapshot(self) -> UploadSession:
        """Copy of the session for progress display, without part buffers"""
        return self.session.model_copy(
            update={
                "parts": {n: p.model_copy() for n, p in self.session.parts.items()},
                "received": {},
            }
        )

    def issue_token(self, part_number: int, ttl_seconds: Optional[int] = None,
                    now: Optional[datetime] = None) -> PresignedToken:
        self._part(part_number)
        return self.presigner.issue(part_number, ttl_seconds or self.token_ttl_seconds, now)

    async def submit_part(self, part_number: int, token: PresignedToken,
                          now: Optional[datetime] = None) -> PartState:
        """Upload one part, retrying transient failures locally.

        Raises TokenInvalid when the token is rejected, PartInFlight when the
        part is already owned by another submission, PartFailed once retries
        are exhausted and SessionClosed when the session ends meanwhile.
        """
        state = self._part(part_number)
        if state.status == PartStatus.UPLOADED:
            return state
        self._ensure_open()
        if state.terminal:
            raise PartFailed(part_number, self._transfers[part_number])

        owner = self._owners[part_number]
        if owner.locked():
            raise PartInFlight(f"Part {part_number} is already being uploaded")

        async with owner:
            result = self.presigner.validate(token, now, part_number)
            if not result.valid:
                self._transition(state, PartStatus.FAILED, last_error=f"token {result.reason.value}")
                logger.warning("Part %s rejected: %s", part_number, result.reason.value)
                raise TokenInvalid(result.reason, part_number)

            if state.status == PartStatus.FAILED:
                self._transition(state, PartStatus.PENDING)
            if self.session.status == SessionStatus.INITIATED:
                self.session.status = SessionStatus.IN_PROGRESS

            async with self._slots:
                return await self._upload(state)

    async def upload_all(self, ttl_seconds: Optional[int] = None) -> UploadSession:
        """Submit every part that is not uploaded yet, then complete.

        Parts are submitted in ascending part number order but may finish in
        any order. Returns the session once it is completed or aborted by
        cancellation; a part that exhausts its retries raises PartFailed.
        """
        self._ensure_open()
        numbers = [n for n in sorted(self.session.parts)
                   if self.session.parts[n].status != PartStatus.UPLOADED]

        async def submit(number: int) -> PartState:
            return await self.submit_part(number, self.issue_token(number, ttl_seconds))

        results = await asyncio.gather(*(submit(n) for n in numbers), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]

        for error in errors:
            if isinstance(error, PartFailed):
                raise error
        if self.session.status == SessionStatus.ABORTED:
            return self.session
        if errors:
            raise errors[0]

        self.complete()
        return self.session

    def complete(self) -> ETag:
        if self.session.status == SessionStatus.COMPLETED:
            return self.session.etag
        self._ensure_open()

        etag = session_etag(self.session)
        self.session.etag = etag
        self.session.status = SessionStatus.COMPLETED
        self.session.completed_at = utcnow()
        self.session.touch()
        logger.info("Completed session %s with ETag %s", self.session_id, etag.value)
        return etag

    def abort(self, reason: str = "cancelled"):
        if self.session.status == SessionStatus.ABORTED:
            return
        if self.session.status == SessionStatus.COMPLETED:
            raise SessionClosed(f"Session {self.session_id} is already completed")
        self._abort(reason)

    async def _upload(self, state: PartState) -> PartState:
        number = state.part_number
        data = self.source.part(self.specs[number])
        expected = part_hasher.digest(data)

        while True:
            if self.cancelled:
                self._transition(state, PartStatus.FAILED, last_error="discarded")
                raise SessionClosed(f"Session {self.session_id} was aborted")

            attempt = self._transfers[number]
            self._transfers[number] += 1
            self._transition(state, PartStatus.UPLOADING, attempt=attempt, last_error=None)

            try:
                received = await self._transmit(number, data, attempt)
                actual = part_hasher.digest(received)
                if actual != expected:
                    raise HashMismatch(number, expected, actual)
            except _Discarded:
                self._transition(state, PartStatus.FAILED, last_error="discarded")
                logger.info("Discarded in-flight part %s of aborted session %s", number, self.session_id)
                raise SessionClosed(f"Session {self.session_id} was aborted")
            except MultipartError as exc:
                self._transition(state, PartStatus.FAILED, last_error=str(exc))
                if not exc.retryable:
                    raise
                if self._transfers[number] > self.max_retries:
                    state.terminal = True
                    logger.error("Part %s failed after %s attempt(s): %s", number, self._transfers[number], exc)
                    self._abort(f"Part {number} failed after {self._transfers[number]} attempt(s)")
                    raise PartFailed(number, self._transfers[number], exc) from exc
                logger.warning("Part %s attempt %s failed, retrying: %s", number, attempt, exc)
                self._transition(state, PartStatus.PENDING)
                continue
            except Exception as exc:
                self._transition(state, PartStatus.FAILED, last_error=str(exc) or type(exc).__name__)
                logger.exception("Part %s attempt %s raised an unexpected error", number, attempt)
                raise

            self.session.received[number] = bytearray(received)
            self._transition(
                state,
                PartStatus.UPLOADED,
                digest=actual,
                received_bytes=len(received),
            )
            logger.debug(
                "Part %s uploaded on attempt %s (%s/%s bytes)",
                number, attempt, self.session.uploaded_bytes, self.session.payload_size,
            )
            return state

    async def _transmit(self, part_number: int, data: bytes, attempt: int) -> bytes:
        send = asyncio.ensure_future(self.transport.send(part_number, data, attempt))
        cancel = asyncio.ensure_future(self._cancelled.wait())
        done, pending = await asyncio.wait({send, cancel}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self.cancelled:
            if send in done and not send.cancelled():
                send.exception()  # result is discarded
            raise _Discarded()
        return send.result()

    def _abort(self, reason: str):
        self._cancelled.set()
        self.session.status = SessionStatus.ABORTED
        self.session.error_message = reason
        self.session.touch()
        logger.warning("Aborted session %s: %s", self.session_id, reason)

    def _ensure_open(self):
        if self.session.is_terminal:
            raise SessionClosed(f"Session {self.session_id} is {self.session.status.value}")

    def _part(self, part_number: int) -> PartState:
        state = self.session.parts.get(part_number)
        if state is None:
            raise OutOfRange(f"Session {self.session_id} has no part {part_number}")
        return state

    def _transition(self, state: PartState, status: PartStatus, **changes):
        previous = state.status
        state.status = status
        for field, value in changes.items():
            setattr(state, field, value)
        self.transitions.append((state.part_number, previous, status))
        self.session.touch()
