"""
Teardown Guard

Deletes the run's resource group on every exit path. A run that never created
a group has nothing to clean up; a failed cleanup is logged and counted but
never replaces the outcome of the run itself.
"""

import threading
from typing import Optional

from .errors import TeardownError
from .metrics import METRICS
from .progress import ProgressLogger
from .providers.base import Provider
from .resources import ResourceHandle


class SessionState:
    """Set-once holder for the run's resource-group handle."""

    def __init__(self):
        self._lock = threading.Lock()
        self._resource_group: Optional[ResourceHandle] = None

    @property
    def resource_group(self) -> Optional[ResourceHandle]:
        return self._resource_group

    def record_resource_group(self, handle: ResourceHandle):
        with self._lock:
            current = self._resource_group
            if current is not None and current.id != handle.id:
                raise RuntimeError(
                    f"Session already owns resource group {current.name}; refusing {handle.name}"
                )
            if current is None:
                self._resource_group = handle


class TeardownGuard:
    def __init__(
        self,
        provider: Provider,
        progress: Optional[ProgressLogger] = None,
        timeout: Optional[float] = None,
        session: Optional[SessionState] = None,
    ):
        self.provider = provider
        self.progress = progress or ProgressLogger()
        self.timeout = timeout
        self.session = session
        self.cleaned_up = False

    def cleanup(self, session: SessionState) -> bool:
        """Delete the recorded resource group. Returns True when nothing is left behind."""
        group = session.resource_group
        if group is None:
            self.progress.log_step("Did not create any resources. No clean up is necessary")
            METRICS["teardown_total"].labels(outcome="skipped").inc()
            return True

        try:
            self.progress.log_step("Deleting Resource Group...")
            self.provider.delete_resource_group(group.name, timeout=self.timeout)
        except Exception as e:
            error = TeardownError(group.name, e)
            self.progress.log_error(str(error), {"resource_group_id": group.id})
            METRICS["teardown_total"].labels(outcome="failed").inc()
            return False

        self.progress.log_step(f"Deleted Resource Group: {group.name}")
        METRICS["teardown_total"].labels(outcome="deleted").inc()
        return True

    def __enter__(self) -> "TeardownGuard":
        if self.session is None:
            self.session = SessionState()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleaned_up = self.cleanup(self.session)
        # Never suppress the run's own exception
        return False
