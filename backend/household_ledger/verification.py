"""
Phone verification for the WhatsApp/AI integration.

Flow:
1. ``generate_code``: normalize the phone, create a one-time code and a
   signed challenge, relay the code to the configured webhook (which sends
   the WhatsApp message) and return the challenge to the caller.
2. ``validate_code``: check the challenge and the code, move the phone to
   the caller if another profile owned it, enable AI and issue a fresh
   integration token.
"""

import time
from typing import Any, Callable, Dict, Optional

import requests
import structlog

from household_ledger.exceptions import ChallengeError, RateLimitedError, RequestRejected
from household_ledger.models import AIToken, SecurityEvent, WebhookLog
from household_ledger.phone import (
    ChallengePayload,
    create_challenge,
    generate_code,
    normalize_phone,
    sha256_hex,
    verify_challenge,
)
from household_ledger.ratelimit import FailureBlocker, RateLimiter
from household_ledger.store import FinanceStore

logger = structlog.get_logger(__name__)

CODE_LENGTH = 6
TOKEN_LENGTH = 50
EVENT_TYPE = "ai_enablement"


class PhoneVerificationService:
    def __init__(
        self,
        store: FinanceStore,
        secret: str,
        code_limiter: RateLimiter,
        failures: FailureBlocker,
        challenge_ttl: int = 300,
        webhook_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        http_post: Callable[..., requests.Response] = requests.post,
    ):
        self.store = store
        self.secret = secret
        self.code_limiter = code_limiter
        self.failures = failures
        self.challenge_ttl = challenge_ttl
        self.webhook_timeout = webhook_timeout
        self.clock = clock
        self.http_post = http_post

    def _event(self, event_type: str, user_id: Optional[str], **metadata: Any) -> None:
        self.store.insert_security_event(
            SecurityEvent(event_type=event_type, user_id=user_id, metadata=metadata)
        )

    def status(self, user_id: str) -> Dict[str, Any]:
        profile = self.store.get_profile(user_id)
        return {
            "ai_enabled": bool(profile and profile.ai_enabled),
            "has_token": self.store.has_active_token(user_id),
            "phone": profile.phone if profile else None,
        }

    def _relay_code(self, url: str, body: Dict[str, Any]) -> tuple:
        """POST the code to the webhook. Returns (http_status, error_message or "")."""
        try:
            response = self.http_post(url, json=body, timeout=self.webhook_timeout)
        except requests.RequestException as e:
            return 0, f"Erro de conexão: {e}"

        status = response.status_code
        if not 200 <= status < 300:
            return status, f"Webhook retornou status HTTP {status}."
        try:
            payload = response.json()
        except ValueError:
            return status, ""
        if isinstance(payload, dict) and payload.get("success") is False:
            return status, "Webhook retornou success: false."
        return status, ""

    def generate_code(self, user_id: str, raw_phone: Optional[str]) -> Dict[str, Any]:
        phone = normalize_phone(raw_phone)
        if phone is None:
            raise RequestRejected(
                "Número de telefone brasileiro inválido. Formato: 55 + DDD + número."
            )

        if self.code_limiter.hit(f"generate:{user_id}"):
            raise RateLimitedError("Muitas tentativas. Aguarde antes de solicitar novo código.")

        code = generate_code(CODE_LENGTH)
        challenge = create_challenge(
            ChallengePayload(
                user_id=user_id,
                code_hash=sha256_hex(code),
                expires_at=self.clock() + self.challenge_ttl,
                phone=phone,
            ),
            self.secret,
        )

        webhook = self.store.active_webhook()
        if webhook is None:
            raise RequestRejected(
                "Nenhum webhook configurado. Contate o administrador.", status_code=503
            )

        profile = self.store.get_profile(user_id)
        started = time.monotonic()
        status, error = self._relay_code(
            webhook.url,
            {"code": code, "email": profile.email if profile else "", "user_id": user_id, "phone": phone},
        )
        self.store.insert_webhook_log(
            WebhookLog(
                webhook_config_id=webhook.id,
                status_code=status,
                response_time_ms=int((time.monotonic() - started) * 1000),
                event_type=EVENT_TYPE,
                user_id=user_id,
            )
        )

        if error:
            self._event("webhook_send_failed", user_id, reason=error, webhook_id=webhook.id)
            logger.warning("verification_code_relay_failed", user_id=user_id, status=status)
            raise RequestRejected(
                f"Falha ao enviar código via WhatsApp: {error}", status_code=502
            )

        logger.info("verification_code_sent", user_id=user_id)
        return {"success": True, "challenge": challenge, "expires_in": self.challenge_ttl}

    def validate_code(
        self,
        user_id: str,
        code: str,
        challenge: str,
        raw_phone: Optional[str],
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        code = (code or "").strip()
        phone = normalize_phone(raw_phone)
        if not code or not challenge:
            raise RequestRejected("Código e challenge são obrigatórios.")
        if phone is None:
            raise RequestRejected("Número de telefone inválido.")

        block_key = f"validate:{user_id}"
        if self.failures.is_blocked(block_key):
            raise RateLimitedError(
                "Muitas tentativas inválidas. Aguarde antes de tentar novamente."
            )
        if self.code_limiter.hit(block_key):
            raise RateLimitedError("Muitas tentativas. Aguarde.")

        payload = verify_challenge(challenge, self.secret)
        if payload is None:
            raise ChallengeError("Challenge inválido ou expirado. Solicite novo código.")
        if payload.user_id != user_id:
            raise ChallengeError("Challenge não corresponde ao usuário.")
        if self.clock() > payload.expires_at:
            raise ChallengeError("Código expirado. Solicite novo.")
        if payload.phone != phone:
            raise ChallengeError("Número de telefone não corresponde.")

        if sha256_hex(code) != payload.code_hash:
            self.failures.record_failure(block_key)
            self._event("invalid_ai_code", user_id, ip=client_ip)
            raise RequestRejected("Código inválido.")

        previous = self.store.find_profile_by_phone(phone, exclude_user_id=user_id)
        if previous is not None:
            self.store.update_profile(previous.id, phone=None, ai_enabled=False)
            self.store.revoke_tokens(previous.id)
            self._event(
                "phone_ownership_transferred",
                user_id,
                phone=phone,
                previous_owner_id=previous.id,
                previous_owner_email=previous.email,
            )
            self._event(
                "phone_removed",
                previous.id,
                phone=phone,
                new_owner_id=user_id,
                reason="ownership_transfer",
            )
            logger.info("phone_ownership_transferred", user_id=user_id, previous_owner_id=previous.id)

        self.store.update_profile(user_id, ai_enabled=True, phone=phone)
        self.store.revoke_tokens(user_id)
        token = generate_code(TOKEN_LENGTH)
        self.store.insert_token(AIToken(user_id=user_id, token_hash=sha256_hex(token)))
        self._event("ai_enabled", user_id, phone=phone)

        logger.info("ai_enabled", user_id=user_id)
        return {
            "success": True,
            "message": "Telefone validado e IA habilitada com sucesso.",
            "token": token,
        }
