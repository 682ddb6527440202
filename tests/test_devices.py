"""Tests for the device registry and trust policies."""

import pytest

from payauth.config import DeviceTrustPolicy
from payauth.service.devices import (
    MAX_FINGERPRINT_LENGTH,
    DeviceInfo,
    DeviceRegistry,
    normalize_fingerprint,
)
from payauth.service.errors import DeviceConflict, ValidationError
from payauth.storage.models import AttemptReason, DeviceAction


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("ana@example.com", 12345678, "5")


@pytest.fixture
def other(memory_store):
    return memory_store.create_user("bob@example.com", 11111111, "1")


@pytest.fixture
def registry(memory_store):
    return DeviceRegistry(memory_store)


def _actions(memory_store, fingerprint):
    return [e.action for e in memory_store.list_device_log(fingerprint=fingerprint)]


class TestNormalizeFingerprint:
    def test_trims_whitespace(self):
        assert normalize_fingerprint("  fp-1 ") == "fp-1"
        assert normalize_fingerprint(None) == ""

    def test_rejects_overlong(self):
        with pytest.raises(ValidationError):
            normalize_fingerprint("x" * (MAX_FINGERPRINT_LENGTH + 1))


class TestBind:
    """Tests for binding devices to users."""

    def test_new_binding_logs_link(self, registry, memory_store, user):
        device = registry.bind(
            "fp-1", user.id, authorized=True, info=DeviceInfo(type="phone", os="Android")
        )

        assert device.user_id == user.id
        assert device.os == "Android"
        assert _actions(memory_store, "fp-1") == [DeviceAction.LINK]

    def test_rebinding_logs_authorization_change(self, registry, memory_store, user):
        registry.bind("fp-1", user.id, authorized=False)
        registry.bind("fp-1", user.id, authorized=True)
        registry.bind("fp-1", user.id, authorized=True)

        assert _actions(memory_store, "fp-1") == [DeviceAction.LINK, DeviceAction.AUTHORIZE]

    def test_bind_to_other_owner_conflicts(self, registry, user, other):
        registry.bind("fp-1", user.id, authorized=True)
        with pytest.raises(DeviceConflict):
            registry.bind("fp-1", other.id, authorized=True)

    def test_bind_requires_fingerprint(self, registry, user):
        with pytest.raises(ValidationError):
            registry.bind("  ", user.id, authorized=True)


class TestDetach:
    """Tests for detaching and unlinking."""

    def test_detach_clears_owner_and_logs(self, registry, memory_store, user):
        registry.bind("fp-1", user.id, authorized=True)

        assert registry.detach("fp-1", details="operator") == 1

        device = memory_store.get_device("fp-1")
        assert device.user_id is None
        assert device.authorized is False
        entries = memory_store.list_device_log(fingerprint="fp-1")
        assert entries[-1].action == DeviceAction.DETACH
        assert entries[-1].user_id == user.id
        assert entries[-1].details == "operator"

    def test_detach_unknown_device(self, registry):
        assert registry.detach("missing") == 0

    def test_detached_device_can_be_bound_by_another_user(self, registry, user, other):
        registry.bind("fp-1", user.id, authorized=True)
        registry.detach("fp-1")
        assert registry.bind("fp-1", other.id, authorized=True).user_id == other.id

    def test_unlink_others_keeps_one(self, registry, memory_store, user):
        for fp in ("fp-1", "fp-2", "fp-3"):
            registry.bind(fp, user.id, authorized=True)

        assert registry.unlink_others(user.id, "fp-2") == 2

        owned = [d.fingerprint for d in memory_store.list_devices_for_user(user.id)]
        assert owned == ["fp-2"]
        assert _actions(memory_store, "fp-1")[-1] == DeviceAction.UNLINK

    def test_history_lists_user_entries(self, registry, user, other):
        registry.bind("fp-1", user.id, authorized=True)
        registry.bind("fp-2", other.id, authorized=True)
        assert [e.fingerprint for e in registry.history(user.id)] == ["fp-1"]


class TestTrustPolicies:
    """Tests for the device branch of a login."""

    def test_missing_fingerprint_is_device_required(self, registry, user):
        trust = registry.trust_for(user.id, "")
        assert trust.reason == AttemptReason.DEVICE_REQUIRED

    def test_first_device_is_authorized(self, registry, user):
        trust = registry.trust_for(user.id, "fp-1")
        assert trust.trusted
        assert trust.device.authorized is True

    def test_second_device_is_linked_but_unauthorized(self, registry, memory_store, user):
        """Test that a new device is bound unauthorized once the user has an authorized one."""
        registry.trust_for(user.id, "fp-1")

        trust = registry.trust_for(user.id, "fp-2")

        assert trust.reason == AttemptReason.DEVICE_UNAUTHORIZED
        device = memory_store.get_device("fp-2")
        assert device.user_id == user.id
        assert device.authorized is False

    def test_device_owned_by_other_user(self, registry, memory_store, user, other):
        registry.trust_for(other.id, "fp-1")

        trust = registry.trust_for(user.id, "fp-1")

        assert trust.reason == AttemptReason.DEVICE_UNAUTHORIZED
        assert memory_store.get_device("fp-1").user_id == other.id

    def test_known_authorized_device(self, registry, user):
        registry.trust_for(user.id, "fp-1")
        assert registry.trust_for(user.id, "fp-1").trusted

    def test_trust_on_first_use_authorizes_every_new_device(self, memory_store, user):
        registry = DeviceRegistry(memory_store, policy=DeviceTrustPolicy.TRUST_ON_FIRST_USE)
        assert registry.trust_for(user.id, "fp-1").trusted
        assert registry.trust_for(user.id, "fp-2").trusted

    def test_verify_never_authorizes_automatically(self, memory_store, user):
        registry = DeviceRegistry(memory_store, policy=DeviceTrustPolicy.VERIFY)

        trust = registry.trust_for(user.id, "fp-1")

        assert trust.reason == AttemptReason.DEVICE_UNAUTHORIZED
        assert memory_store.get_device("fp-1").user_id == user.id

    def test_authorize_unlocks_device(self, registry, user):
        registry.trust_for(user.id, "fp-1")
        registry.trust_for(user.id, "fp-2")

        registry.authorize("fp-2")

        assert registry.trust_for(user.id, "fp-2").trusted
