"""
User administration for accounts holding the ``admin`` role.

Every mutating action records a security event carrying the acting admin's
id. Actions that touch the AI integration revoke the target's active tokens
first, so an old token never outlives the change.
"""

from typing import Any, Callable, Dict, List, Optional

import structlog

from household_ledger.exceptions import RequestRejected, StoreError
from household_ledger.models import AIToken, Profile, SecurityEvent
from household_ledger.phone import generate_code, sha256_hex
from household_ledger.store import FinanceStore
from household_ledger.verification import TOKEN_LENGTH

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


class UserAdminService:
    def __init__(self, store: FinanceStore):
        self.store = store
        self._actions: Dict[str, Callable[[str, str], Dict[str, Any]]] = {
            "deactivate": self.deactivate,
            "activate": self.activate,
            "delete": self.delete,
            "revoke-token": self.revoke_token,
            "regenerate-token": self.regenerate_token,
            "block-api": self.block_api,
            "remove-phone": self.remove_phone,
        }

    def require_admin(self, caller_id: str) -> None:
        profile = self.store.get_profile(caller_id)
        if profile is None or ADMIN_ROLE not in profile.roles:
            raise RequestRejected("Forbidden", status_code=403)

    def handle(self, caller_id: str, action: Optional[str], user_id: Optional[str]) -> Dict[str, Any]:
        """
        Run one admin action on behalf of ``caller_id``.

        Raises:
            RequestRejected: caller is not an admin (403), unknown action or
                missing/self target (400), unknown target user (404)
        """
        self.require_admin(caller_id)
        if action == "list":
            return {"users": self.list_users()}
        handler = self._actions.get(action or "")
        if handler is None:
            raise RequestRejected("Unknown action")
        if not user_id:
            raise RequestRejected("userId required")
        if self.store.get_profile(user_id) is None:
            raise RequestRejected("User not found.", status_code=404)
        result = handler(caller_id, user_id)
        logger.info("admin_action", action=action, user_id=user_id, by=caller_id)
        return result

    def _event(self, event_type: str, user_id: str, caller_id: str) -> None:
        self.store.insert_security_event(
            SecurityEvent(event_type=event_type, user_id=user_id, metadata={"by": caller_id})
        )

    def list_users(self) -> List[Dict[str, Any]]:
        return [self._describe(profile) for profile in self.store.list_profiles()]

    def _describe(self, profile: Profile) -> Dict[str, Any]:
        return {
            "id": profile.id,
            "email": profile.email,
            "created_at": profile.created_at.isoformat(),
            "display_name": profile.display_name,
            "is_active": profile.is_active,
            "ai_enabled": profile.ai_enabled,
            "phone": profile.phone,
            "last_activity": profile.last_activity.isoformat() if profile.last_activity else None,
            "has_active_token": self.store.has_active_token(profile.id),
            "roles": list(profile.roles),
        }

    def deactivate(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        if user_id == caller_id:
            raise RequestRejected("Cannot deactivate yourself")
        self.store.update_profile(user_id, is_active=False)
        self._event("user_deactivated", user_id, caller_id)
        return {"success": True}

    def activate(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        self.store.update_profile(user_id, is_active=True)
        self._event("user_activated", user_id, caller_id)
        return {"success": True}

    def delete(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        if user_id == caller_id:
            raise RequestRejected("Cannot delete yourself")
        try:
            self.store.delete_user(user_id)
        except StoreError as e:
            logger.error("admin_delete_failed", user_id=user_id, error=str(e))
            raise RequestRejected("Internal server error.", status_code=500) from e
        self._event("user_deleted", user_id, caller_id)
        return {"success": True}

    def revoke_token(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        self.store.revoke_tokens(user_id, revoked_by=caller_id)
        self.store.update_profile(user_id, ai_enabled=False)
        self._event("token_revoked", user_id, caller_id)
        return {"success": True}

    def regenerate_token(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        """Replace the user's integration token; the new token is returned once."""
        self.store.revoke_tokens(user_id, revoked_by=caller_id)
        token = generate_code(TOKEN_LENGTH)
        self.store.insert_token(AIToken(user_id=user_id, token_hash=sha256_hex(token)))
        self.store.update_profile(user_id, ai_enabled=True)
        self._event("token_regenerated", user_id, caller_id)
        return {"success": True, "token": token}

    def block_api(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        self.store.revoke_tokens(user_id, revoked_by=caller_id)
        self.store.update_profile(user_id, ai_enabled=False)
        self._event("api_blocked", user_id, caller_id)
        return {"success": True}

    def remove_phone(self, caller_id: str, user_id: str) -> Dict[str, Any]:
        self.store.update_profile(user_id, phone=None, ai_enabled=False)
        self.store.revoke_tokens(user_id, revoked_by=caller_id)
        self._event("phone_removed_by_admin", user_id, caller_id)
        return {"success": True}
