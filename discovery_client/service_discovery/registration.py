"""
Registration Lifecycle

Advertises the calling process on the registry and keeps the advertisement
alive by re-sending it every ttl/3 seconds until deregistration or shutdown.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import structlog

from discovery_client.exceptions import DiscoveryException, ValidationError
from discovery_client.service_discovery.models import RegisterPayload
from discovery_client.utils.clock import Clock

logger = structlog.get_logger("registration")

SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")

# (payload, is_renewal) -> awaitable upsert
UpsertFunc = Callable[[RegisterPayload, bool], Awaitable[None]]
RemoveFunc = Callable[[str], Awaitable[None]]


def validate_service_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Service name must be a non-empty string", field="name")
    if not SERVICE_NAME_PATTERN.match(name):
        raise ValidationError(f"Service name '{name}' contains invalid characters", field="name")
    return name


def validate_payload(payload: RegisterPayload) -> RegisterPayload:
    """Reject malformed payloads before anything reaches the wire."""
    validate_service_name(payload.name)

    if not isinstance(payload.url, str) or not payload.url:
        raise ValidationError("Service URL is required and must be a string", field="url")
    parsed = urlparse(payload.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Service URL '{payload.url}' must be an absolute http(s) URL", field="url")

    ttl = payload.ttl
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
        raise ValidationError("ttl must be a positive number of seconds", field="ttl")

    if payload.health_path is not None and (
        not isinstance(payload.health_path, str) or not payload.health_path.startswith("/")
    ):
        raise ValidationError("health_path must start with '/'", field="health_path")

    if not isinstance(payload.version, str):
        raise ValidationError("version must be a string", field="version")

    if isinstance(payload.tags, str) or any(not isinstance(tag, str) or not tag.strip() for tag in payload.tags):
        raise ValidationError("tags must be non-empty strings", field="tags")

    return payload


@dataclass
class Registration:
    """Handle for one live advertisement"""
    payload: RegisterPayload
    renewals: int = 0
    renewal_failures: int = 0
    last_error: Optional[DiscoveryException] = None
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.payload.name

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()


class RegistrationManager:
    """
    Owns the renewal loops for this process's registrations.

    Network calls are injected (upsert/remove) so the manager stays free of
    retry and breaker wiring, which the facade supplies.
    """

    def __init__(
        self,
        upsert: UpsertFunc,
        remove: RemoveFunc,
        clock: Optional[Clock] = None
    ):
        self._upsert = upsert
        self._remove = remove
        self.clock = clock or Clock()
        self._registrations: Dict[str, Registration] = {}

    def get(self, name: str) -> Optional[Registration]:
        return self._registrations.get(name)

    @property
    def registrations(self) -> Dict[str, Registration]:
        return dict(self._registrations)

    async def register(self, payload: RegisterPayload) -> Registration:
        validate_payload(payload)

        await self._upsert(payload, False)

        # Re-registering replaces the previous loop (upsert-by-name)
        previous = self._registrations.pop(payload.name, None)
        if previous is not None:
            await self._stop(previous)

        registration = Registration(payload=payload)
        registration._task = asyncio.create_task(
            self._renewal_loop(registration), name=f"renew:{payload.name}"
        )
        self._registrations[payload.name] = registration

        logger.info(
            "Registered service",
            service=payload.name,
            url=payload.url,
            ttl=payload.ttl,
            renew_every=round(payload.renewal_interval, 3)
        )
        return registration

    async def _renewal_loop(self, registration: Registration) -> None:
        interval = registration.payload.renewal_interval
        while True:
            await self.clock.sleep(interval)
            try:
                await self._upsert(registration.payload, True)
                registration.renewals += 1
                registration.last_error = None
            except DiscoveryException as e:
                # Keep the loop alive; the registry's TTL decides expiry
                registration.renewal_failures += 1
                registration.last_error = e
                logger.error(
                    "Registration renewal failed",
                    service=registration.name,
                    failures=registration.renewal_failures,
                    error=e.message
                )

    async def deregister(self, name: str) -> bool:
        """
        Stop renewing and ask the registry to drop the record.

        Succeeds locally even when the remote removal fails. Returns True if
        the remote removal was acknowledged.
        """
        registration = self._registrations.pop(name, None)
        if registration is not None:
            await self._stop(registration)

        try:
            await self._remove(name)
        except DiscoveryException as e:
            logger.warning(
                "Remote deregistration failed; registry TTL will expire the record",
                service=name,
                error=e.message
            )
            return False

        logger.info("Deregistered service", service=name)
        return True

    async def _stop(self, registration: Registration) -> None:
        task, registration._task = registration._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Stop every renewal loop without deleting remote records."""
        registrations = list(self._registrations.values())
        self._registrations.clear()
        for registration in registrations:
            await self._stop(registration)
        if registrations:
            logger.info("Stopped renewal loops", count=len(registrations))
