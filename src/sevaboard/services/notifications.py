"""
Notification dispatcher for claim confirmations.

Sends confirmation emails through the EmailJS REST API after a claim has
committed. Delivery is best-effort: callers treat a ``NotificationError`` as
a warning, never as a reason to undo the claim.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from sevaboard.config import settings
from sevaboard.services.catalog_models import Claimant


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a confirmation email could not be handed to the relay."""
    pass


class EmailNotifier:
    """
    EmailJS client.

    Without service id, template id and public key the notifier is
    unconfigured and ``notify_claim`` is a no-op.
    """

    def __init__(
        self,
        service_id: Optional[str] = None,
        template_id: Optional[str] = None,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
        admin_email: Optional[str] = None,
        from_name: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.service_id = service_id if service_id is not None else settings.EMAILJS_SERVICE
        self.template_id = template_id if template_id is not None else settings.EMAILJS_TEMPLATE
        self.public_key = public_key if public_key is not None else settings.EMAILJS_PUBLIC_KEY
        self.private_key = private_key if private_key is not None else settings.EMAILJS_PRIVATE_KEY
        self.admin_email = admin_email if admin_email is not None else settings.ADMIN_EMAIL
        self.from_name = from_name or settings.EMAIL_FROM_NAME
        self.api_url = api_url or settings.EMAILJS_API_URL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.service_id and self.template_id and self.public_key)

    def build_params(self, claimant: Claimant, item_names: Sequence[str]) -> Dict[str, Any]:
        """Template parameters for the participant's confirmation."""
        return {
            "to_email": claimant.email,
            "to_name": claimant.name,
            "from_name": self.from_name,
            "user_name": claimant.name,
            "user_email": claimant.email,
            "user_phone": claimant.phone,
            "items": ", ".join(item_names),
        }

    async def send(self, template_params: Dict[str, Any]) -> None:
        """
        Send one templated email.

        Raises:
            NotificationError: If the relay is unreachable or rejects the request
        """
        payload: Dict[str, Any] = {
            "service_id": self.service_id,
            "template_id": self.template_id,
            "user_id": self.public_key,
            "template_params": template_params,
        }
        if self.private_key:
            payload["accessToken"] = self.private_key

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.api_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.api_url, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NotificationError(f"Email relay unreachable: {str(e)}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"Email relay rejected message ({response.status_code}): {response.text}"
            )

    async def notify_claim(self, claimant: Claimant, item_names: Sequence[str]) -> bool:
        """
        Email the participant and, if configured, the admin address.

        Returns:
            True if emails were sent, False if notifications are not configured

        Raises:
            NotificationError: If any send fails
        """
        if not self.is_configured:
            logger.debug("Email notifications not configured; skipping")
            return False

        params = self.build_params(claimant, item_names)
        await self.send(params)

        if self.admin_email:
            await self.send({**params, "to_email": self.admin_email, "to_name": "Admin"})

        return True
