from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from payauth.config import DeviceTrustPolicy
from payauth.logging import get_logger
from payauth.service.errors import DeviceConflict, ValidationError
from payauth.storage.errors import ConstraintViolation
from payauth.storage.models import AttemptReason, Device, DeviceAction, DeviceLogEntry

logger = get_logger(__name__)

MAX_FINGERPRINT_LENGTH = 255


class DeviceStore(Protocol):
    def get_device(self, fingerprint: str) -> Optional[Device]: ...

    def bind_device(
        self,
        fingerprint: str,
        user_id: str,
        *,
        authorized: bool,
        type: Optional[str] = None,
        os: Optional[str] = None,
        browser: Optional[str] = None,
    ) -> Tuple[Device, bool]: ...

    def set_device_authorized(self, fingerprint: str, authorized: bool) -> Optional[Device]: ...

    def detach_device(self, fingerprint: str) -> List[Device]: ...

    def list_devices_for_user(self, user_id: str) -> List[Device]: ...

    def touch_device_login(self, fingerprint: str, at: datetime) -> None: ...

    def append_device_log(self, entry: DeviceLogEntry) -> DeviceLogEntry: ...

    def list_device_log(
        self, *, user_id: Optional[str] = None, fingerprint: Optional[str] = None
    ) -> List[DeviceLogEntry]: ...


@dataclass(frozen=True)
class DeviceInfo:
    type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None


@dataclass(frozen=True)
class DeviceTrust:
    """Device branch of a login: trusted, or the failure reason to report."""

    device: Optional[Device]
    reason: Optional[AttemptReason] = None

    @property
    def trusted(self) -> bool:
        return self.reason is None


def normalize_fingerprint(value: Optional[str]) -> str:
    fingerprint = (value or "").strip()
    if len(fingerprint) > MAX_FINGERPRINT_LENGTH:
        raise ValidationError(
            "device fingerprint too long",
            detail={"max_length": MAX_FINGERPRINT_LENGTH},
        )
    return fingerprint


class DeviceRegistry:
    """Owns device records: binding to users, authorization and detachment.

    Ownership checks and writes happen inside single store operations, so two
    users racing to bind one fingerprint end with exactly one owner and the
    loser gets :class:`DeviceConflict`.
    """

    def __init__(
        self,
        store: DeviceStore,
        *,
        policy: DeviceTrustPolicy = DeviceTrustPolicy.FIRST_DEVICE,
    ) -> None:
        self.store = store
        self.policy = policy

    def get(self, fingerprint: Optional[str]) -> Optional[Device]:
        fingerprint = normalize_fingerprint(fingerprint)
        if not fingerprint:
            return None
        return self.store.get_device(fingerprint)

    def bind(
        self,
        fingerprint: Optional[str],
        user_id: str,
        *,
        authorized: bool,
        info: Optional[DeviceInfo] = None,
    ) -> Device:
        fingerprint = normalize_fingerprint(fingerprint)
        if not fingerprint:
            raise ValidationError("device fingerprint required")
        info = info or DeviceInfo()
        prior = self.store.get_device(fingerprint)
        try:
            device, newly_linked = self.store.bind_device(
                fingerprint,
                user_id,
                authorized=authorized,
                type=info.type,
                os=info.os,
                browser=info.browser,
            )
        except ConstraintViolation as exc:
            logger.warning("device_bind_conflict", user_id=user_id)
            raise DeviceConflict(
                "device is linked to another account", detail=exc.detail
            ) from exc
        if newly_linked:
            self.store.append_device_log(DeviceLogEntry.snapshot(DeviceAction.LINK, device))
            logger.info("device_linked", user_id=user_id, authorized=device.authorized)
        elif prior is not None and prior.authorized != device.authorized:
            action = DeviceAction.AUTHORIZE if device.authorized else DeviceAction.UNAUTHORIZE
            self.store.append_device_log(DeviceLogEntry.snapshot(action, device))
        return device

    def authorize(self, fingerprint: str) -> Optional[Device]:
        return self._set_authorized(fingerprint, True)

    def unauthorize(self, fingerprint: str) -> Optional[Device]:
        return self._set_authorized(fingerprint, False)

    def _set_authorized(self, fingerprint: str, authorized: bool) -> Optional[Device]:
        fingerprint = normalize_fingerprint(fingerprint)
        device = self.store.set_device_authorized(fingerprint, authorized)
        if device is None:
            return None
        action = DeviceAction.AUTHORIZE if authorized else DeviceAction.UNAUTHORIZE
        self.store.append_device_log(DeviceLogEntry.snapshot(action, device))
        return device

    def detach(self, fingerprint: str, *, details: Optional[str] = None) -> int:
        """Clear the owner of every device with this fingerprint.

        Sessions keep their fingerprint reference; only the owner binding goes.
        """
        fingerprint = normalize_fingerprint(fingerprint)
        detached = self.store.detach_device(fingerprint)
        for device in detached:
            self.store.append_device_log(
                DeviceLogEntry.snapshot(DeviceAction.DETACH, device, details=details)
            )
        if detached:
            logger.info("device_detached", count=len(detached))
        return len(detached)

    def unlink_others(self, user_id: str, keep_fingerprint: str) -> int:
        unlinked = 0
        for device in self.store.list_devices_for_user(user_id):
            if device.fingerprint == keep_fingerprint:
                continue
            for prior in self.store.detach_device(device.fingerprint):
                self.store.append_device_log(
                    DeviceLogEntry.snapshot(
                        DeviceAction.UNLINK, prior, details="replaced by device recovery"
                    )
                )
                unlinked += 1
        if unlinked:
            logger.info("devices_unlinked", user_id=user_id, count=unlinked)
        return unlinked

    def touch(self, fingerprint: str, at: datetime) -> None:
        self.store.touch_device_login(fingerprint, at)

    def history(self, user_id: str) -> List[DeviceLogEntry]:
        return self.store.list_device_log(user_id=user_id)

    def trust_for(
        self, user_id: str, fingerprint: Optional[str], info: Optional[DeviceInfo] = None
    ) -> DeviceTrust:
        fingerprint = normalize_fingerprint(fingerprint)
        if not fingerprint:
            return DeviceTrust(device=None, reason=AttemptReason.DEVICE_REQUIRED)

        device = self.store.get_device(fingerprint)
        if device is not None and device.is_owned:
            if device.user_id != user_id or not device.authorized:
                return DeviceTrust(device=device, reason=AttemptReason.DEVICE_UNAUTHORIZED)
            return DeviceTrust(device=device)

        authorize = self._authorize_new_device(user_id)
        try:
            device = self.bind(fingerprint, user_id, authorized=authorize, info=info)
        except DeviceConflict:
            # Another user bound it between the read and the bind
            return DeviceTrust(device=None, reason=AttemptReason.DEVICE_UNAUTHORIZED)
        if not device.authorized:
            return DeviceTrust(device=device, reason=AttemptReason.DEVICE_UNAUTHORIZED)
        return DeviceTrust(device=device)

    def _authorize_new_device(self, user_id: str) -> bool:
        if self.policy == DeviceTrustPolicy.TRUST_ON_FIRST_USE:
            return True
        if self.policy == DeviceTrustPolicy.VERIFY:
            return False
        return not any(d.authorized for d in self.store.list_devices_for_user(user_id))
