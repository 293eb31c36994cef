"""
Klaviyo marketing sync.

Best effort only: every call logs and swallows its own failures and
returns ``None``/``False``. Nothing here may raise into order processing,
so routes schedule these calls as background tasks.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import Settings
from fulfillment.models import MarketingProfile

logger = structlog.get_logger(__name__)

_FAILURES = (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError)


class KlaviyoClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None, timeout: float = 10.0):
        self.enabled = bool(settings.klaviyo_api_key)
        self._client = httpx.Client(
            base_url=settings.klaviyo_base_url,
            headers={
                "accept": "application/json",
                "content-type": "application/json",
                "revision": settings.klaviyo_revision,
                "Authorization": f"Klaviyo-API-Key {settings.klaviyo_api_key}",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def find_profile(self, email: str) -> Optional[str]:
        if not self.enabled:
            return None
        if '"' in email or "\\" in email:
            # Would break out of the quoted filter value
            logger.warning("klaviyo_find_profile_rejected_email", email=email)
            return None
        try:
            response = self._client.get("/profiles/", params={"filter": f'equals(email,"{email}")'})
            response.raise_for_status()
            profiles = response.json()["data"]
        except _FAILURES as e:
            logger.warning("klaviyo_find_profile_failed", email=email, error=str(e))
            return None
        return profiles[0]["id"] if profiles else None

    def create_profile(self, name: str, email: str) -> Optional[str]:
        if not self.enabled:
            return None
        attributes = {"email": email, "first_name": name}

        try:
            response = self._client.post("/profiles/", json={"data": {"type": "profile", "attributes": attributes}})
            if response.status_code == 409:
                # Already exists; Klaviyo tells us which profile it collided with
                duplicate_id = response.json()["errors"][0]["meta"]["duplicate_profile_id"]
                logger.info("klaviyo_profile_exists", email=email, profile_id=duplicate_id)
                return duplicate_id
            response.raise_for_status()
            profile_id = response.json()["data"]["id"]
        except _FAILURES as e:
            logger.warning("klaviyo_create_profile_failed", email=email, error=str(e))
            return None

        logger.info("klaviyo_profile_created", email=email, profile_id=profile_id)
        return profile_id

    def add_to_list(
        self,
        profile_id: str,
        list_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> bool:
        if not self.enabled:
            return False
        attributes = {"email_address": email, "first_name": name}
        if phone_number:
            attributes["phone_number"] = phone_number

        try:
            response = self._client.post(
                f"/lists/{list_id}/relationships/profiles/",
                json={"data": [{"type": "profile", "id": profile_id, "attributes": attributes}]},
            )
            response.raise_for_status()
        except _FAILURES as e:
            logger.warning("klaviyo_add_to_list_failed", profile_id=profile_id, list_id=list_id, error=str(e))
            return False
        return True

    def post_event(
        self,
        metric: str,
        profile_id: str,
        email: str,
        properties: Dict[str, Any],
        unique_id: Optional[str] = None,
    ) -> bool:
        if not self.enabled:
            return False
        attributes: Dict[str, Any] = {
            "properties": properties,
            "metric": {"data": {"type": "metric", "attributes": {"name": metric}}},
            "profile": {"data": {"type": "profile", "id": profile_id, "attributes": {"email": email}}},
        }
        if unique_id:
            attributes["unique_id"] = unique_id

        try:
            response = self._client.post("/events/", json={"data": {"type": "event", "attributes": attributes}})
            response.raise_for_status()
        except _FAILURES as e:
            logger.warning("klaviyo_post_event_failed", metric=metric, profile_id=profile_id, error=str(e))
            return False
        return True


class MarketingSync:
    """Keeps customers on Klaviyo lists, using the local profile table as a hint."""

    ORDER_CONFIRMATION = "Order Confirmation Trigger"

    def __init__(self, client: KlaviyoClient, session_factory):
        self.client = client
        self._session_factory = session_factory

    def _cached_profile(self, email: str) -> Optional[str]:
        db = self._session_factory()
        try:
            cached = db.get(MarketingProfile, email)
            return cached.profile_id if cached else None
        except SQLAlchemyError as e:
            logger.warning("marketing_cache_read_failed", email=email, error=str(e))
            return None
        finally:
            db.close()

    def _remember(self, email: str, profile_id: Optional[str]) -> None:
        db = self._session_factory()
        try:
            cached = db.get(MarketingProfile, email)
            if profile_id is None:
                if cached:
                    db.delete(cached)
            elif cached:
                cached.profile_id = profile_id
            else:
                db.add(MarketingProfile(email=email, profile_id=profile_id))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("marketing_cache_write_failed", email=email, error=str(e))
        finally:
            db.close()

    def resolve_profile(self, name: str, email: str) -> Optional[str]:
        profile_id = self._cached_profile(email)
        if profile_id:
            return profile_id
        profile_id = self.client.find_profile(email) or self.client.create_profile(name, email)
        if profile_id:
            self._remember(email, profile_id)
        return profile_id

    def register_customer(self, name: str, email: str, list_id: Optional[str], phone_number: Optional[str] = None) -> bool:
        if not list_id:
            return False
        profile_id = self.resolve_profile(name, email)
        if not profile_id:
            return False
        if self.client.add_to_list(profile_id, list_id, email=email, name=name, phone_number=phone_number):
            return True

        # The cached id may be stale; look it up again next time
        self._remember(email, None)
        return False

    def send_order_confirmation(
        self,
        order_id: str,
        name: str,
        email: str,
        address: Optional[str] = None,
        products: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        profile_id = self.resolve_profile(name, email)
        if not profile_id:
            return False
        return self.client.post_event(
            self.ORDER_CONFIRMATION,
            profile_id,
            email,
            {
                "orderId": order_id,
                "Billing Address": {"Name": name, "Address": address},
                "Products": products or [],
            },
            unique_id=order_id,
        )
