from unittest.mock import MagicMock

import pytest

from vnet_orchestrator.errors import ProviderOperationError
from vnet_orchestrator.resources import ResourceHandle, ResourceKind
from vnet_orchestrator.teardown import SessionState, TeardownGuard


def _group(name="NetworkSampleRGabc"):
    return ResourceHandle(
        id=f"/subscriptions/sub/resourceGroups/{name}",
        kind=ResourceKind.RESOURCE_GROUP,
        name=name,
        resource_group=name,
    )


class TestSessionState:
    def test_records_once(self):
        session = SessionState()
        group = _group()
        session.record_resource_group(group)
        session.record_resource_group(_group())
        assert session.resource_group is group

    def test_refuses_a_second_group(self):
        session = SessionState()
        session.record_resource_group(_group("first"))
        with pytest.raises(RuntimeError):
            session.record_resource_group(_group("second"))
        assert session.resource_group.name == "first"


class TestCleanup:
    def test_nothing_created(self, progress):
        provider = MagicMock()
        assert TeardownGuard(provider, progress).cleanup(SessionState()) is True
        provider.delete_resource_group.assert_not_called()
        assert progress.steps == ["Did not create any resources. No clean up is necessary"]

    def test_deletes_recorded_group(self, progress):
        provider = MagicMock()
        session = SessionState()
        session.record_resource_group(_group())

        assert TeardownGuard(provider, progress, timeout=30).cleanup(session) is True

        provider.delete_resource_group.assert_called_once_with("NetworkSampleRGabc", timeout=30)
        assert progress.steps == ["Deleting Resource Group...", "Deleted Resource Group: NetworkSampleRGabc"]

    def test_failure_is_logged_not_raised(self, progress):
        provider = MagicMock()
        provider.delete_resource_group.side_effect = ProviderOperationError("throttled", code="TooManyRequests")
        session = SessionState()
        session.record_resource_group(_group())

        assert TeardownGuard(provider, progress).cleanup(session) is False

        assert len(progress.errors) == 1
        assert "NetworkSampleRGabc" in progress.errors[0]["error"]
        assert "TooManyRequests" in progress.errors[0]["error"]

    def test_timeout_is_logged_not_raised(self, progress):
        provider = MagicMock()
        provider.delete_resource_group.side_effect = TimeoutError("still deleting")
        session = SessionState()
        session.record_resource_group(_group())

        assert TeardownGuard(provider, progress).cleanup(session) is False


class TestContextManager:
    def test_cleans_up_on_success(self, progress):
        provider = MagicMock()
        with TeardownGuard(provider, progress) as guard:
            guard.session.record_resource_group(_group())

        provider.delete_resource_group.assert_called_once()
        assert guard.cleaned_up

    def test_cleans_up_and_reraises(self, progress):
        provider = MagicMock()
        with pytest.raises(ValueError):
            with TeardownGuard(provider, progress) as guard:
                guard.session.record_resource_group(_group())
                raise ValueError("provisioning failed")

        provider.delete_resource_group.assert_called_once()

    def test_teardown_error_does_not_mask_original(self, progress):
        provider = MagicMock()
        provider.delete_resource_group.side_effect = RuntimeError("delete failed")
        with pytest.raises(ValueError, match="provisioning failed"):
            with TeardownGuard(provider, progress) as guard:
                guard.session.record_resource_group(_group())
                raise ValueError("provisioning failed")
        assert guard.cleaned_up is False
