# services/upload_service.py
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.config import Settings, settings as default_settings
from models.upload_models import (
    ETag,
    PartSizePolicy,
    PartState,
    PresignedToken,
    ReassemblyResult,
    SessionStatus,
    UploadSession,
    UploadSessionCreate,
    VerificationResult,
    utcnow,
)
from services.byte_source import ByteSource
from services.coordinator import UploadCoordinator
from services.errors import SessionNotFound
from services.partitioner import policy_for_count
from services.presign import PresignedUrlSimulator, presigned_url
from services.session_store import SessionStore, build_session_store
from services.transport import SimulatedTransport, Transport
from services.verifier import verify, verify_reassembly

logger = logging.getLogger(__name__)


class UploadService:
    """Registry of live upload sessions plus the archive of finished ones"""

    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[SessionStore] = None,
        transport: Optional[Transport] = None,
    ):
        self.settings = config or default_settings
        self.store = store or build_session_store(self.settings.REDIS_URL, self.settings.SESSION_TTL_SECONDS)
        self._transport = transport
        self.coordinators: Dict[str, UploadCoordinator] = {}

    def _build_transport(self) -> Transport:
        if self._transport is not None:
            return self._transport
        return SimulatedTransport(
            latency_seconds=self.settings.SIMULATED_LATENCY_SECONDS,
            failure_rate=self.settings.FAILURE_RATE,
            corruption_rate=self.settings.CORRUPTION_RATE,
            seed=self.settings.TRANSPORT_SEED,
        )

    def _coordinator_options(self) -> dict:
        return {
            "presigner": PresignedUrlSimulator(single_use=self.settings.SINGLE_USE_TOKENS),
            "transport": self._build_transport(),
            "max_retries": self.settings.MAX_RETRIES,
            "concurrency_limit": self.settings.CONCURRENCY_LIMIT,
            "token_ttl_seconds": self.settings.TOKEN_TTL_SECONDS,
        }

    def build_policy(self, payload_size: int, session_data: UploadSessionCreate) -> PartSizePolicy:
        def given(value, default):
            return value if value is not None else default

        # only None falls back to the defaults, an explicit 0 is validated
        policy = PartSizePolicy(
            fixed_part_size=given(session_data.part_size, self.settings.DEFAULT_PART_SIZE),
            min_part_size=given(session_data.min_part_size, self.settings.MIN_PART_SIZE),
            max_parts=given(session_data.max_parts, self.settings.MAX_PARTS),
        )
        if session_data.part_count is not None:
            policy = policy_for_count(payload_size, session_data.part_count, policy)
        return policy

    async def create_session(self, payload: bytes, session_data: Optional[UploadSessionCreate] = None) -> UploadSession:
        """Create a new upload session"""
        session_data = session_data or UploadSessionCreate()
        source = ByteSource(payload)
        coordinator = UploadCoordinator(
            source,
            self.build_policy(len(source), session_data),
            **self._coordinator_options(),
        )
        self.coordinators[coordinator.session_id] = coordinator
        return coordinator.snapshot()

    def get_coordinator(self, session_id: str) -> UploadCoordinator:
        coordinator = self.coordinators.get(session_id)
        if coordinator is None:
            raise SessionNotFound(f"No live session {session_id}")
        return coordinator

    def issue_token(self, session_id: str, part_number: int, ttl_seconds: Optional[int] = None) -> PresignedToken:
        return self.get_coordinator(session_id).issue_token(part_number, ttl_seconds)

    def presigned_url(self, session_id: str, token: PresignedToken) -> str:
        return presigned_url(token, self.settings.PRESIGN_BASE_URL, f"uploads/{session_id}")

    async def submit_part(self, session_id: str, part_number: int, token: PresignedToken,
                          now: Optional[datetime] = None) -> PartState:
        coordinator = self.get_coordinator(session_id)
        try:
            return await coordinator.submit_part(part_number, token, now)
        finally:
            await self._archive_if_terminal(coordinator)

    async def run_upload(self, session_id: str) -> UploadSession:
        coordinator = self.get_coordinator(session_id)
        try:
            await coordinator.upload_all()
        finally:
            await self._archive_if_terminal(coordinator)
        return coordinator.snapshot()

    async def complete_upload(self, session_id: str) -> ETag:
        """Complete the multipart upload"""
        coordinator = self.get_coordinator(session_id)
        etag = coordinator.complete()
        await self._archive_if_terminal(coordinator)
        return etag

    async def abort_upload(self, session_id: str, reason: str = "cancelled by client"):
        """Abort an upload session"""
        coordinator = self.get_coordinator(session_id)
        coordinator.abort(reason)
        await self._archive_if_terminal(coordinator)

    async def resume_upload(self, session_id: str) -> UploadSession:
        """Start a new session for an aborted one, keeping its uploaded parts"""
        previous = self.get_coordinator(session_id)
        if not previous.session.is_terminal:
            previous.abort("superseded by resumed session")
            await self._archive_if_terminal(previous)
        coordinator = UploadCoordinator.resume(
            previous.session, previous.source, **self._coordinator_options()
        )
        self.coordinators[coordinator.session_id] = coordinator
        return coordinator.snapshot()

    def verify_session(self, session_id: str, expected_etag: Optional[str] = None) -> VerificationResult:
        return verify(self.get_coordinator(session_id).session, expected_etag)

    def verify_reassembly(self, session_id: str) -> ReassemblyResult:
        coordinator = self.get_coordinator(session_id)
        return verify_reassembly(coordinator.session, coordinator.source)

    async def get_session(self, session_id: str) -> Optional[UploadSession]:
        """Get session by ID, live sessions first, then the archive"""
        coordinator = self.coordinators.get(session_id)
        if coordinator is not None:
            return coordinator.snapshot()
        return await self.store.get(session_id)

    async def get_active_sessions(self) -> List[UploadSession]:
        """Get all live sessions that have not reached a terminal state"""
        return [c.snapshot() for c in self.coordinators.values() if not c.session.is_terminal]

    async def expire_stale_sessions(self, max_idle: timedelta) -> int:
        """Abort live sessions idle for longer than ``max_idle``"""
        cutoff = utcnow() - max_idle
        expired = 0
        for coordinator in list(self.coordinators.values()):
            session = coordinator.session
            if session.is_terminal or session.updated_at >= cutoff:
                continue
            coordinator.abort(f"idle since {session.updated_at.isoformat()}")
            await self._archive_if_terminal(coordinator)
            expired += 1
        return expired

    async def purge_archived_sessions(self, max_age: timedelta) -> int:
        """Delete archived sessions last updated more than ``max_age`` ago.

        Sessions still held in the live registry are left alone.
        """
        cutoff = utcnow() - max_age
        purged = 0
        for session in await self.store.list():
            if session.session_id in self.coordinators or session.updated_at >= cutoff:
                continue
            await self.store.delete(session.session_id)
            purged += 1
        return purged

    async def evict_terminal_sessions(self, min_age: timedelta = timedelta(0)) -> int:
        """Drop archived terminal sessions from the live registry"""
        cutoff = utcnow() - min_age
        evicted = 0
        for session_id, coordinator in list(self.coordinators.items()):
            session = coordinator.session
            if session.is_terminal and session.updated_at <= cutoff:
                await self.store.save(coordinator.snapshot())
                del self.coordinators[session_id]
                evicted += 1
        return evicted

    async def _archive_if_terminal(self, coordinator: UploadCoordinator):
        if coordinator.session.status in (SessionStatus.COMPLETED, SessionStatus.ABORTED):
            await self.store.save(coordinator.snapshot())
