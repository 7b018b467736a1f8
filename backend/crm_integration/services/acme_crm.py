"""AcmeCRM client.

Handles all the "external CRM" traffic for the demo. Outside demo mode it
talks to the AcmeCRM REST API over httpx; in demo mode every call returns a
canned envelope without touching the network.
"""
import logging
import secrets
import time
from typing import Any, Callable, Optional

import httpx

from ..core.config import Settings, settings as default_settings
from ..core.observability import track_crm_request
from ..core.rate_limiting import SlidingWindowRateLimiter
from ..core.security import PIIRedactor


logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class AcmeCrmError(Exception):
    """Base class for AcmeCRM failures."""


class AuthenticationError(AcmeCrmError):
    """AcmeCRM rejected our credentials (HTTP 401)."""


class ValidationError(AcmeCrmError):
    """AcmeCRM rejected the payload (HTTP 400)."""


class RateLimitError(AcmeCrmError):
    """Local request ceiling reached, or AcmeCRM answered HTTP 429."""


class ServiceUnavailableError(AcmeCrmError):
    """AcmeCRM is down: 5xx, timeout or connection failure."""


class UnknownResponseError(AcmeCrmError):
    """AcmeCRM answered with a status we do not understand."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AcmeCrmClient:
    """Client for the AcmeCRM contacts API."""

    USER_AGENT = "Linq-Integration/1.0"

    def __init__(
        self,
        config: Optional[Settings] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        http_client: Optional[httpx.Client] = None,
        demo_mode: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the AcmeCRM client.

        Args:
            config: Settings to read endpoint, credentials and limits from
            rate_limiter: Window shared by every caller of this client
            http_client: Pre-built httpx client (tests pass a MockTransport)
            demo_mode: Force demo/live mode instead of deriving it from config
            sleep: Used between transport retries
        """
        self.config = config or default_settings
        self.demo_mode = self.config.acme_demo_mode if demo_mode is None else demo_mode
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_requests=self.config.acme_crm_rate_limit_per_minute,
            window_seconds=self.config.acme_crm_rate_limit_window,
        )
        self.max_retries = self.config.acme_crm_retry_count
        self.retry_interval = self.config.acme_crm_retry_interval
        self._sleep = sleep
        self.client = http_client or httpx.Client(
            base_url=self.config.acme_crm_base_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.acme_crm_api_key}",
                "User-Agent": self.USER_AGENT,
            },
            timeout=httpx.Timeout(
                self.config.acme_crm_timeout,
                connect=self.config.acme_crm_open_timeout,
            ),
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "AcmeCrmClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def push_contact(self, contact_data: dict[str, Any]) -> dict[str, Any]:
        """Create a contact in AcmeCRM.

        Args:
            contact_data: Record in AcmeCRM format (see field_mapping.to_external)

        Returns:
            Response envelope with ``success`` and the new ``acme_id``

        Raises:
            AcmeCrmError: One of the typed subclasses, by failure kind
        """
        logger.info(f"Pushing contact to AcmeCRM: {contact_data.get('acme_email')}")
        logger.debug(f"AcmeCRM payload: {PIIRedactor.redact_dict(contact_data)}")

        if self.demo_mode:
            track_crm_request("push_contact", "demo")
            return self._mock_push_response(contact_data)

        return self._request("push_contact", "POST", "/contacts", json=contact_data)

    def get_contacts(self, filters: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Retrieve contacts from AcmeCRM with optional filtering.

        Args:
            filters: Optional filters (company, limit, ...)

        Returns:
            Envelope with ``contacts`` and ``total``
        """
        filters = filters or {}
        logger.info(f"Retrieving contacts from AcmeCRM with filters: {filters}")

        if self.demo_mode:
            track_crm_request("get_contacts", "demo")
            return self._mock_contacts_response(filters)

        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("get_contacts", "GET", "/contacts", params=params)

    def get_contact(self, acme_id: str) -> dict[str, Any]:
        """Retrieve a specific contact by AcmeCRM ID."""
        logger.info(f"Retrieving contact from AcmeCRM: {acme_id}")

        if self.demo_mode:
            track_crm_request("get_contact", "demo")
            return self._mock_contact_response(acme_id)

        return self._request("get_contact", "GET", f"/contacts/{acme_id}")

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Run one live call: rate check, HTTP with retry, status translation."""
        if not self.rate_limiter.try_acquire():
            track_crm_request(operation, "rate_limited")
            raise RateLimitError(
                f"Rate limit exceeded: {self.rate_limiter.max_requests} requests per minute"
            )

        start = time.time()
        try:
            response = self._api_call_with_retry(
                lambda: self.client.request(method, path, **kwargs)
            )
            body = self._handle_response(response, operation.replace("_", " "))
        except httpx.TimeoutException as e:
            track_crm_request(operation, "ServiceUnavailableError", time.time() - start)
            raise ServiceUnavailableError(
                "AcmeCRM service is currently unavailable (timeout)"
            ) from e
        except httpx.TransportError as e:
            track_crm_request(operation, "ServiceUnavailableError", time.time() - start)
            raise ServiceUnavailableError("Unable to connect to AcmeCRM service") from e
        except AcmeCrmError as e:
            track_crm_request(operation, type(e).__name__, time.time() - start)
            raise

        track_crm_request(operation, "success", time.time() - start)
        return body

    def _api_call_with_retry(self, func: Callable[[], httpx.Response]) -> httpx.Response:
        """Execute an AcmeCRM call, retrying transient failures with exponential backoff.

        Timeouts, connection failures and 429/5xx responses are retried up to
        ``max_retries`` times; the last response or error is surfaced as is.

        Raises:
            httpx.TransportError: If every attempt failed at the transport level
        """
        delay = self.retry_interval

        for attempt in range(self.max_retries + 1):
            is_last = attempt == self.max_retries
            try:
                response = func()
            except httpx.TransportError as e:
                if is_last:
                    raise
                logger.warning(
                    f"AcmeCRM request failed: {e!r}, "
                    f"retrying in {delay}s (attempt {attempt + 1}/{self.max_retries})"
                )
                self._sleep(delay)
                delay *= 2
                continue

            if response.status_code in RETRY_STATUSES and not is_last:
                logger.warning(
                    f"AcmeCRM API error {response.status_code}, "
                    f"retrying in {delay}s (attempt {attempt + 1}/{self.max_retries})"
                )
                self._sleep(delay)
                delay *= 2
                continue

            return response

        # Loop always returns or raises on the last attempt
        raise ServiceUnavailableError("Max retries exceeded")

    def _handle_response(self, response: httpx.Response, action: str) -> dict[str, Any]:
        """Translate an HTTP response into a body or a typed error."""
        status = response.status_code

        if status in (200, 201):
            try:
                return response.json()
            except ValueError as e:
                raise UnknownResponseError(
                    f"Unparseable response from AcmeCRM while trying to {action}", status
                ) from e
        if status == 400:
            raise ValidationError(f"Invalid data sent to AcmeCRM while trying to {action}")
        if status == 401:
            raise AuthenticationError("Authentication failed with AcmeCRM")
        if status == 429:
            raise RateLimitError("Rate limit exceeded for AcmeCRM API")
        if 500 <= status <= 599:
            raise ServiceUnavailableError(f"AcmeCRM service error while trying to {action}")
        raise UnknownResponseError(f"Unexpected response from AcmeCRM: {status}", status)

    @staticmethod
    def _generate_acme_id() -> str:
        return f"acme_{secrets.token_hex(8)}"

    def _mock_push_response(self, contact_data: dict[str, Any]) -> dict[str, Any]:
        acme_id = self._generate_acme_id()
        return {
            "success": True,
            "acme_id": acme_id,
            "message": "Contact created successfully",
            "contact": {**contact_data, "acme_id": acme_id},
        }

    def _mock_contacts_response(self, filters: dict[str, Any]) -> dict[str, Any]:
        limit = filters.get("limit")
        limit = 5 if limit is None else int(limit)
        contacts = [dict(contact) for contact in MOCK_CONTACTS[:limit]]
        return {
            "success": True,
            "contacts": contacts,
            "total": len(contacts),
        }

    def _mock_contact_response(self, acme_id: str) -> dict[str, Any]:
        return {
            "success": True,
            "contact": {
                "acme_id": acme_id,
                "acme_first_name": "Alex",
                "acme_last_name": "Smith",
                "acme_email": "alex.smith@example.com",
                "acme_phone": "+1-555-123-4567",
                "acme_company": "Example Corp",
                "acme_job_title": "Marketing Director",
                "acme_linkedin": "https://linkedin.com/in/alexsmith",
                "acme_notes": "Mock contact from AcmeCRM",
                "acme_source": "Linq QR Scan",
            },
        }


# Contacts that already exist in the demo AcmeCRM account
MOCK_CONTACTS: list[dict[str, Any]] = [
    {
        "acme_id": "acme_12345",
        "acme_first_name": "Sarah",
        "acme_last_name": "Johnson",
        "acme_email": "sarah.johnson@techcorp.com",
        "acme_phone": "+1-555-987-6543",
        "acme_company": "TechCorp Solutions",
        "acme_job_title": "CTO",
        "acme_linkedin": "https://linkedin.com/in/sarahjohnson",
        "acme_notes": "Existing contact in AcmeCRM",
        "acme_source": "Conference Lead",
    },
    {
        "acme_id": "acme_67890",
        "acme_first_name": "Michael",
        "acme_last_name": "Chen",
        "acme_email": "m.chen@innovate.io",
        "acme_phone": "+1-555-234-5678",
        "acme_company": "Innovate Labs",
        "acme_job_title": "Product Manager",
        "acme_linkedin": "https://linkedin.com/in/michaelchen",
        "acme_notes": "Existing contact in AcmeCRM",
        "acme_source": "Webinar Attendee",
    },
    {
        "acme_id": "acme_11111",
        "acme_first_name": "Emily",
        "acme_last_name": "Rodriguez",
        "acme_email": "emily.r@startup.com",
        "acme_phone": "+1-555-456-7890",
        "acme_company": "StartupXYZ",
        "acme_job_title": "Founder",
        "acme_linkedin": "https://linkedin.com/in/emilyrodriguez",
        "acme_notes": "Existing contact in AcmeCRM",
        "acme_source": "Cold Outreach",
    },
    {
        "acme_id": "acme_22222",
        "acme_first_name": "David",
        "acme_last_name": "Kim",
        "acme_email": "david@enterprise.com",
        "acme_phone": "+1-555-789-0123",
        "acme_company": "Enterprise Solutions Inc",
        "acme_job_title": "VP of Engineering",
        "acme_linkedin": "https://linkedin.com/in/davidkim",
        "acme_notes": "Existing contact in AcmeCRM",
        "acme_source": "Referral",
    },
    {
        "acme_id": "acme_33333",
        "acme_first_name": "Lisa",
        "acme_last_name": "Thompson",
        "acme_email": "lisa.thompson@consulting.com",
        "acme_phone": "+1-555-345-6789",
        "acme_company": "Thompson Consulting",
        "acme_job_title": "Senior Consultant",
        "acme_linkedin": "https://linkedin.com/in/lisathompson",
        "acme_notes": "Existing contact in AcmeCRM",
        "acme_source": "LinkedIn",
    },
]
