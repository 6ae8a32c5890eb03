from __future__ import annotations

import secrets
import time
import uuid
from typing import Any, Iterable, Mapping, NoReturn, Optional, Union

from tokenguard.config import DegradedVerificationPolicy, Settings
from tokenguard.logging import get_logger, token_log_context
from tokenguard.service.blacklist import BlacklistStore
from tokenguard.service.errors import (
    CacheUnavailableError,
    FamilyInvalidated,
    TokenMalformed,
    TokenReuseDetected,
    TokenRevoked,
)
from tokenguard.service.families import TokenFamilyRegistry
from tokenguard.service.security_events import SecurityEventLog
from tokenguard.service.token_codec import HS256TokenCodec
from tokenguard.service.token_info import TokenInfoCache
from tokenguard.storage.cache import CacheBackend, SwapResult
from tokenguard.storage.models import (
    CachedTokenInfo,
    FamilyState,
    Identity,
    IssuedToken,
    SecurityEventType,
    TokenClaims,
    TokenPair,
    TokenType,
)

logger = get_logger(__name__)


class TokenService:
    """Issues, verifies, rotates and revokes access/refresh token pairs.

    Refresh tokens belong to a family: every pair minted by rotation keeps the
    family id of the original login. The family registry holds the single
    refresh id that may still be exchanged. Presenting any other refresh id
    from the family is treated as theft and revokes the whole lineage.
    """

    def __init__(
        self,
        cache: CacheBackend,
        settings: Settings,
        *,
        blacklist: Optional[BlacklistStore] = None,
        families: Optional[TokenFamilyRegistry] = None,
        events: Optional[SecurityEventLog] = None,
        codec: Optional[HS256TokenCodec] = None,
        token_info: Optional[TokenInfoCache] = None,
    ) -> None:
        namespace = settings.cache_namespace
        self.cache = cache
        self.settings = settings
        self.blacklist = blacklist or BlacklistStore(cache, namespace)
        self.families = families or TokenFamilyRegistry(cache, namespace)
        self.events = events or SecurityEventLog(
            cache,
            namespace,
            max_entries=settings.security_event_max_entries,
            ttl_seconds=settings.security_event_ttl_seconds,
        )
        self.codec = codec or HS256TokenCodec(
            issuer=settings.jwt_issuer, audience=settings.jwt_audience
        )
        self.token_info = token_info or TokenInfoCache(cache, namespace)
        self.logger = logger

    def _now(self) -> float:
        return time.time()

    def _secret_for(self, token_type: TokenType) -> str:
        if token_type is TokenType.ACCESS:
            return self.settings.jwt_access_secret or ""
        return self.settings.jwt_refresh_secret or ""

    def _ttl_for(self, token_type: TokenType) -> int:
        if token_type is TokenType.ACCESS:
            return self.settings.access_token_ttl_seconds
        return self.settings.refresh_token_ttl_seconds

    @staticmethod
    def _new_family_id() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def _new_token_id() -> str:
        return str(uuid.uuid4())

    # -- minting -----------------------------------------------------------

    def _mint(
        self, identity: Identity, token_type: TokenType, family: str, now: int
    ) -> tuple[str, TokenClaims]:
        claims = TokenClaims(
            subject_id=identity.subject_id,
            role=identity.role,
            email=identity.email,
            token_id=self._new_token_id(),
            family=family,
            type=token_type,
            issued_at=now,
            expires_at=now + self._ttl_for(token_type),
        )
        payload = claims.to_payload(
            issuer=self.settings.jwt_issuer, audience=self.settings.jwt_audience
        )
        return self.codec.encode(payload, self._secret_for(token_type)), claims

    def _mint_pair(
        self, identity: Identity, family: str
    ) -> tuple[TokenPair, TokenClaims, TokenClaims]:
        now = int(self._now())
        access_token, access_claims = self._mint(identity, TokenType.ACCESS, family, now)
        refresh_token, refresh_claims = self._mint(identity, TokenType.REFRESH, family, now)
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            token_family=family,
            expires_in=access_claims.expires_at - now,
            refresh_expires_in=refresh_claims.expires_at - now,
        )
        return pair, access_claims, refresh_claims

    @staticmethod
    def _issued(*claims: TokenClaims) -> list[IssuedToken]:
        return [IssuedToken(token_id=c.token_id, expires_at=c.expires_at) for c in claims]

    async def create_token_pair(
        self, identity: Union[Identity, Mapping[str, Any]]
    ) -> TokenPair:
        """Mint a fresh access/refresh pair in a brand new family."""
        if not isinstance(identity, Identity):
            identity = Identity(**identity)
        family = self._new_family_id()
        pair, access_claims, refresh_claims = self._mint_pair(identity, family)
        await self.families.register(
            family,
            refresh_claims.token_id,
            self._issued(access_claims, refresh_claims),
            self.settings.refresh_token_ttl_seconds,
        )
        await self._cache_claims(access_claims, refresh_claims)
        self.logger.info(
            "token_pair_created",
            subject_id=identity.subject_id,
            role=identity.role.value,
            family=family,
        )
        await self._record_event(
            identity.subject_id, SecurityEventType.LOGIN, {"family": family}
        )
        return pair

    # -- verification ------------------------------------------------------

    def _decode_claims(self, token: str, token_type: TokenType) -> TokenClaims:
        """Stateless checks: signature, issuer, audience, expiry and type."""
        payload = self.codec.decode(
            token,
            self._secret_for(token_type),
            now=self._now(),
            leeway=self.settings.clock_skew_leeway_seconds,
        )
        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed("token claims are incomplete or invalid") from exc
        if claims.type is not token_type:
            raise TokenMalformed(
                "unexpected token type",
                detail={"expected": token_type.value, "received": claims.type.value},
            )
        return claims

    async def verify_token(
        self, token: str, token_type: Union[TokenType, str] = TokenType.ACCESS
    ) -> TokenClaims:
        """Validate ``token`` against the secret for ``token_type``.

        Signature and expiry are checked first and never need the cache. The
        blacklist lookup follows. When the cache is unreachable the configured
        degraded policy decides between signature-only acceptance and
        rejection.
        """
        token_type = TokenType(token_type)
        claims = self._decode_claims(token, token_type)
        try:
            revoked = await self.blacklist.contains(claims.token_id)
        except CacheUnavailableError as exc:
            if self.settings.degraded_verification is DegradedVerificationPolicy.FAIL_CLOSED:
                self.logger.warning(
                    "token_verification_rejected_cache_unavailable",
                    token_id=claims.token_id,
                    error_code=exc.error_code,
                )
                raise
            self.logger.warning(
                "token_verified_degraded",
                token_id=claims.token_id,
                error_code=exc.error_code,
            )
            return claims
        if revoked:
            self.logger.info("token_revoked_rejected", token_id=claims.token_id)
            raise TokenRevoked("token has been revoked", detail={"token_id": claims.token_id})
        return claims

    # -- rotation ----------------------------------------------------------

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair in the same family.

        Write path: cache failures propagate as CacheUnavailableError and
        never degrade to signature-only checks.
        """
        claims = self._decode_claims(refresh_token, TokenType.REFRESH)
        with token_log_context(family=claims.family, subject_id=claims.subject_id):
            return await self._rotate(claims)

    async def _rotate(self, claims: TokenClaims) -> TokenPair:
        # The family is checked before the blacklist so that every token of
        # an invalidated lineage reports FamilyInvalidated.
        record = await self.families.get(claims.family)
        if record is None or record.revoked:
            self.logger.info(
                "refresh_rejected_family_invalidated", token_id=claims.token_id
            )
            raise FamilyInvalidated(
                "token family is no longer valid", detail={"family": claims.family}
            )

        if await self.blacklist.contains(claims.token_id):
            raise TokenRevoked("token has been revoked", detail={"token_id": claims.token_id})

        if claims.token_id not in record.valid_token_ids:
            await self._handle_reuse(claims)

        pair, access_claims, refresh_claims = self._mint_pair(claims.identity, claims.family)
        # Track before the swap so a concurrent revocation also blacklists
        # the pair this call is about to hand out.
        await self.families.track_issued(
            claims.family,
            self._issued(access_claims, refresh_claims),
            self.settings.refresh_token_ttl_seconds,
        )
        outcome = await self.families.rotate(
            claims.family,
            claims.token_id,
            refresh_claims.token_id,
            self.settings.refresh_token_ttl_seconds,
        )
        if outcome is SwapResult.MISSING:
            # Another caller rotated this token first
            await self._handle_reuse(claims)
        if outcome is SwapResult.GUARDED:
            raise FamilyInvalidated(
                "token family was revoked during rotation", detail={"family": claims.family}
            )

        await self._cache_claims(access_claims, refresh_claims)
        self.logger.info(
            "token_pair_rotated",
            retired_token_id=claims.token_id,
            new_token_id=refresh_claims.token_id,
        )
        await self._record_event(
            claims.subject_id,
            SecurityEventType.TOKEN_REFRESH,
            {"family": claims.family, "retired_token_id": claims.token_id},
        )
        return pair

    async def _handle_reuse(self, claims: TokenClaims) -> NoReturn:
        """Revoke the family of a replayed refresh token and raise."""
        self.logger.warning(
            "token_reuse_detected",
            family=claims.family,
            token_id=claims.token_id,
            subject_id=claims.subject_id,
        )
        revoked_count = await self._revoke_family(claims.family, reason="token_reuse")
        await self._record_event(
            claims.subject_id,
            SecurityEventType.TOKEN_REUSE_DETECTED,
            {
                "family": claims.family,
                "token_id": claims.token_id,
                "tokens_blacklisted": revoked_count,
            },
        )
        raise TokenReuseDetected(
            "refresh token reuse detected; token family revoked",
            detail={"family": claims.family},
        )

    # -- revocation --------------------------------------------------------

    async def blacklist_token(self, token: str, *, reason: str = "logout") -> bool:
        """Blacklist ``token`` for the rest of its lifetime.

        The token does not need to be valid: an expired or foreign-signed
        token is decoded without verification. Returns False when the token
        is already past its expiry.
        """
        payload = self.codec.decode_unverified(token)
        token_id = payload.get("jti")
        if not token_id:
            raise TokenMalformed("cannot blacklist a token without an id")
        now = self._now()
        expires_at = self._blacklist_deadline(payload, now)
        added = await self.blacklist.add(str(token_id), expires_at, reason=reason, now=now)
        await self._forget_claims(str(token_id))
        return added

    def _blacklist_deadline(self, payload: Mapping[str, Any], now: float) -> float:
        """Blacklist expiry for an unverified payload.

        No token this service signs outlives the refresh TTL, so a later or
        missing ``exp`` is capped there. A non-numeric or non-finite ``exp``
        is rejected as malformed.
        """
        ceiling = now + self.settings.refresh_token_ttl_seconds
        if payload.get("exp") is None:
            return ceiling
        expires_at = self.codec.numeric_claim(payload["exp"])
        if expires_at is None:
            raise TokenMalformed("token exp claim is not a finite number")
        return min(expires_at, ceiling)

    async def blacklist_tokens(
        self, tokens: Iterable[str], *, reason: str = "batch_logout"
    ) -> int:
        """Blacklist many tokens in one round trip; undecodable ones are skipped."""
        entries = []
        now = self._now()
        for token in tokens:
            try:
                payload = self.codec.decode_unverified(token)
                expires_at = self._blacklist_deadline(payload, now)
            except TokenMalformed:
                self.logger.info("blacklist_skipped_malformed_token")
                continue
            token_id = payload.get("jti")
            if token_id:
                entries.append((str(token_id), expires_at))
        if not entries:
            return 0
        count = await self.blacklist.add_many(entries, reason=reason, now=now)
        await self._forget_claims(*(token_id for token_id, _ in entries))
        return count

    async def _revoke_family(self, family_id: str, *, reason: str) -> int:
        issued = await self.families.revoke(
            family_id, self.settings.refresh_token_ttl_seconds
        )
        blacklisted = await self.blacklist.add_many(
            ((token.token_id, token.expires_at) for token in issued),
            reason=reason,
            now=self._now(),
        )
        await self._forget_claims(*(token.token_id for token in issued))
        self.logger.info(
            "token_family_revoked",
            family=family_id,
            reason=reason,
            tokens_blacklisted=blacklisted,
        )
        return blacklisted

    async def invalidate_token_family(
        self,
        family_id: str,
        *,
        reason: str = "logout_everywhere",
        subject_id: Optional[str] = None,
    ) -> int:
        """Revoke a family for good and blacklist every token it issued.

        Idempotent. Returns the number of blacklist entries written.
        """
        count = await self._revoke_family(family_id, reason=reason)
        if subject_id:
            await self._record_event(
                subject_id,
                SecurityEventType.FAMILY_INVALIDATED,
                {"family": family_id, "reason": reason, "tokens_blacklisted": count},
            )
        return count

    # -- introspection -----------------------------------------------------

    async def is_token_blacklisted(self, token: str) -> bool:
        try:
            payload = self.codec.decode_unverified(token)
        except TokenMalformed:
            return False
        token_id = payload.get("jti")
        if not token_id:
            return False
        return await self.blacklist.contains(str(token_id))

    async def get_family_state(self, family_id: str) -> Optional[FamilyState]:
        record = await self.families.get(family_id)
        return record.state if record else None

    async def get_token_info(self, token: str) -> Optional[CachedTokenInfo]:
        """Cached claims of a live token issued here, without verifying it.

        Malformed, unknown, expired and revoked tokens all yield None.
        """
        try:
            payload = self.codec.decode_unverified(token)
        except TokenMalformed:
            return None
        token_id = payload.get("jti")
        if not token_id:
            return None
        return await self.token_info.get(str(token_id))

    async def _cache_claims(self, *claims: TokenClaims) -> None:
        try:
            await self.token_info.store(*claims, now=self._now())
        except CacheUnavailableError as exc:
            self.logger.warning("token_info_store_failed", error_code=exc.error_code)

    async def _forget_claims(self, *token_ids: str) -> None:
        try:
            await self.token_info.forget(*token_ids)
        except CacheUnavailableError as exc:
            self.logger.warning("token_info_forget_failed", error_code=exc.error_code)

    async def _record_event(
        self, user_id: str, event: SecurityEventType, details: dict
    ) -> None:
        """Append to the security log; the log is advisory so failures are only logged."""
        try:
            await self.events.log_security_event(user_id, event, details)
        except CacheUnavailableError as exc:
            self.logger.warning(
                "security_event_log_failed",
                subject_id=user_id,
                event_type=event.value,
                error_code=exc.error_code,
            )
