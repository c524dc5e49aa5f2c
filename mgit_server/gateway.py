# mgit_server/gateway.py
#
# Login orchestration. main.py wires HTTP onto this; no crypto lives here.
#
# Per-challenge state machine:
#
#     Pending --(valid signed event bound to it)--> Verified --(TTL)--> evicted
#
# Verified is terminal: a second event for the same challenge fails with
# AlreadyVerified, so a replayed login event cannot mint another session.
# The session token has its own lifecycle (issued -> expired).
#
# verify_response commits the transition LAST: check event, enrich, mint
# token, then mark_verified. Any failure before that leaves the challenge
# pending so the client can retry with it.
#
# Cross-device login: the device that signs (e.g. a phone that scanned the
# QR code) gets the token in the verify response; the browser polling the
# status route receives the same token exactly once.

import asyncio
import logging
from typing import Any, Dict, Optional

from .audit import AuditLog
from .errors import AuthError, ChallengeKindMismatch, ChallengeNotFound, InvalidToken, MissingToken
from .metadata import MetadataEnricher
from .models import SessionClaims
from .nostr import EventVerifier
from .storage import Challenge, ChallengeKind, ChallengeStatus, ChallengeStore
from .tokens import SessionIssuer

logger = logging.getLogger(__name__)

LOGIN_TAG = "login"


class AuthGateway:
    def __init__(
        self,
        store: ChallengeStore,
        verifier: EventVerifier,
        issuer: SessionIssuer,
        enricher: Optional[MetadataEnricher] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.issuer = issuer
        self.enricher = enricher
        self.audit = audit

    def _audit(self, **fields) -> None:
        if self.audit is not None:
            self.audit.record(**fields)

    async def _audit_async(self, **fields) -> None:
        # flock + fsync; keep them off the event loop
        if self.audit is not None:
            await asyncio.to_thread(self.audit.record, **fields)

    def issue_challenge(
        self,
        kind: str = ChallengeKind.NOSTR.value,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, str]:
        ch = self.store.create(kind)
        logger.info("auth.challenge_issued kind=%s challenge=%s", kind, ch.id)
        self._audit(
            action="challenge",
            result="issued",
            challenge_id=ch.id,
            request_ip=request_ip,
            user_agent=user_agent,
        )
        return {"challenge": ch.id, "tag": LOGIN_TAG}

    async def verify_response(
        self,
        signed_event: Any,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            result = self.verifier.verify(signed_event)

            metadata = None
            if self.enricher is not None:
                # never raises; None on timeout / relay failure
                metadata = await self.enricher.fetch_profile(result.pubkey)

            token = self.issuer.issue(result.pubkey)

            # single-use gate: of two racing logins only one gets here
            self.store.mark_verified(result.challenge_id, result.pubkey, session_token=token)
        except AuthError as e:
            event_id = signed_event.get("id") if isinstance(signed_event, dict) else None
            logger.info("auth.verify_denied reason=%s", e.reason)
            await self._audit_async(
                action="verify",
                result="denied",
                reason=e.reason,
                event_id=event_id if isinstance(event_id, str) else None,
                request_ip=request_ip,
                user_agent=user_agent,
            )
            raise

        logger.info("auth.verified pubkey=%s challenge=%s", result.pubkey, result.challenge_id)
        await self._audit_async(
            action="verify",
            result="approved",
            challenge_id=result.challenge_id,
            pubkey=result.pubkey,
            event_id=result.event_id,
            request_ip=request_ip,
            user_agent=user_agent,
            extra={"alg": self.verifier.scheme.name, "metadata": metadata is not None},
        )

        return {
            "status": "OK",
            "pubkey": result.pubkey,
            "metadata": metadata,
            "token": token,
        }

    def status(self, challenge_id: Optional[str], kind: Optional[str] = None) -> Challenge:
        if not challenge_id:
            raise ChallengeNotFound()
        ch = self.store.get(challenge_id)
        if kind is not None and ch.kind != kind:
            raise ChallengeKindMismatch()
        return ch

    def poll(self, challenge_id: Optional[str], kind: Optional[str] = None, info_key: str = "userInfo") -> Dict[str, Any]:
        """
        Status view for a polling client. The first poll after verification
        also carries the session token; later polls do not.
        """
        ch = self.status(challenge_id, kind)
        view = ch.public_view(info_key)
        if ch.status == ChallengeStatus.VERIFIED:
            token = self.store.claim_session_token(ch.id)
            if token:
                view["token"] = token
        return view

    def authenticate(self, authorization: Optional[str]) -> SessionClaims:
        """
        Gate in front of every protected endpoint.

        Header form: "Bearer <token>". The scheme word itself is not checked,
        only that a second part is present.
        """
        if not authorization:
            raise MissingToken()

        parts = authorization.split()
        if len(parts) < 2:
            raise InvalidToken()

        return self.issuer.validate(parts[1])
