"""
Mount supervisor -- the per-name mount/unmount state machine.

::

    unmounted --mount--> mounting --ready--> mounted --unmount--> unmounting --> (removed)
                             |                  |
                             +--exit/timeout--> error <--reconcile (pid dead)
                                                  |
                                                  +--mount--> mounting (stale state cleared)

``mount`` only records the ``mounting`` transition and hands the launch
to a worker thread; callers poll :meth:`MountSupervisor.get` /
:meth:`MountSupervisor.wait_for` or pass an ``on_change`` listener.
``unmount`` blocks until the driver process is gone.

At most one transition per name is in flight. A second request for the
same name fails with OperationInProgress instead of queueing, with one
exception: ``unmount`` may cancel a ``mounting`` transition once the
launch has resolved.

Crashes after a successful mount are noticed by :meth:`reconcile`,
either on demand or from the monitor thread every
``reconcile_interval`` seconds.

Forced unmount policy for in-flight file transfers: drain, then abort.
The driver receives SIGTERM and gets ``unmount_grace`` seconds to flush
its write-back cache and exit; whatever is still transferring after
that is aborted by SIGKILL.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .audit import audit_event
from .driver import MountDriver
from .errors import (
    AlreadyMounted,
    DriverError,
    NotFound,
    OperationInProgress,
    RMountError,
    ValidationError,
)
from .models import DataSourceConfig, MountRecord, MountStatus
from .registry import MountRegistry

logger = logging.getLogger("rmount.supervisor")

Listener = Callable[[MountRecord], None]


class _Transition:
    """An in-flight mount or unmount for one name."""

    def __init__(self, kind: str):
        self.kind = kind
        self.pid: Optional[int] = None
        self.cancelled = False
        self.launched = threading.Event()


def _describe(exc: BaseException) -> str:
    """Error text for a record, with driver output appended verbatim."""
    message = str(exc) or exc.__class__.__name__
    cause = getattr(exc, "cause", None)
    if cause and str(cause) not in message:
        message = f"{message}: {cause}"
    return message


class MountSupervisor:
    """Drives mounts for registered data sources.

    Args:
        registry: Persistent mount bookkeeping.
        vault: Unlocked :class:`CredentialVault` to resolve credentials.
        driver: Mount-driver capability.
        mounts_root: Parent of every mount point (``<root>/<name>``).
        mount_timeout: Seconds a launch may take before it counts as failed.
        unmount_grace: Seconds between SIGTERM and SIGKILL on unmount.
        on_change: Called with the new record on every status change.
            Runs on the thread making the change; keep it short and do
            not call back into mount/unmount from it.
        home: rmount home for the audit log; None disables auditing.
    """

    def __init__(
        self,
        registry: MountRegistry,
        vault,
        driver: MountDriver,
        mounts_root: Path,
        mount_timeout: float = 20.0,
        unmount_grace: float = 10.0,
        on_change: Optional[Listener] = None,
        home: Optional[Path] = None,
    ):
        self.registry = registry
        self.vault = vault
        self.driver = driver
        self.mounts_root = mounts_root.expanduser()
        self.mount_timeout = mount_timeout
        self.unmount_grace = unmount_grace
        self.on_change = on_change
        self.home = home

        self._lock = threading.Lock()
        self._changed = threading.Condition()
        self._inflight: dict[str, _Transition] = {}
        self._stop_event = threading.Event()
        self._monitor: Optional[threading.Thread] = None

        recovered = self.reconcile()
        if recovered:
            logger.info("Recovered %d stale mount record(s) on startup", len(recovered))

    # -- queries -------------------------------------------------------------

    def local_path_for(self, name: str) -> Path:
        return self.mounts_root / name

    def get(self, name: str) -> Optional[MountRecord]:
        return self.registry.get(name)

    def list_mounts(self) -> list[MountRecord]:
        return self.registry.all()

    def wait_for(self, name: str, timeout: Optional[float] = None) -> MountRecord:
        """Block until ``name`` reaches a settled state or ``timeout`` passes.

        Returns:
            The current record; an ``unmounted`` placeholder if the record
            is gone.
        """
        def settled() -> bool:
            rec = self.registry.get(name)
            return rec is None or (rec.settled and name not in self._inflight)

        with self._changed:
            self._changed.wait_for(settled, timeout=timeout)
        return self.registry.get(name) or self._unmounted(name)

    # -- mount -----------------------------------------------------------------

    def mount(self, name: str, remote_path: str = "") -> MountRecord:
        """Start mounting ``name``. Returns once ``mounting`` is recorded.

        Raises:
            NotFound: Unknown data source.
            AlreadyMounted: ``name`` is mounted or mounting.
            OperationInProgress: Another transition for ``name`` is running.
            ValidationError: The mount point exists and is not empty.
        """
        config = self.vault.get(name)
        remote_path = remote_path.strip("/")

        with self._lock:
            if name in self._inflight:
                raise OperationInProgress(name)
            previous = self.registry.get(name)
            if previous is not None:
                if previous.status == MountStatus.UNMOUNTING:
                    raise OperationInProgress(name)
                if previous.status in (MountStatus.MOUNTED, MountStatus.MOUNTING):
                    raise AlreadyMounted(name)
            transition = _Transition("mount")
            self._inflight[name] = transition

        try:
            if previous is not None:
                self._clear_stale(previous)
            local_path = self.local_path_for(name)
            self._prepare_mount_point(local_path)
            record = self._set(
                MountRecord(
                    name=name,
                    remote_path=remote_path,
                    local_path=str(local_path),
                    status=MountStatus.MOUNTING,
                )
            )
        except BaseException:
            with self._lock:
                self._inflight.pop(name, None)
            raise

        worker = threading.Thread(
            target=self._run_mount,
            args=(transition, config, record),
            name=f"rmount-mount-{name}",
            daemon=True,
        )
        worker.start()
        logger.info("Mounting %s at %s", name, local_path)
        return record

    def _run_mount(
        self, transition: _Transition, config: DataSourceConfig, record: MountRecord
    ) -> None:
        name = record.name
        local_path = Path(record.local_path)

        try:
            pid = self.driver.launch(config, record.remote_path, local_path)
        except Exception as exc:
            transition.launched.set()
            self._finish_mount(transition, record, error=exc)
            return

        transition.pid = pid
        record = self._set(record.model_copy(update={"pid": pid}))
        transition.launched.set()

        try:
            self.driver.wait_ready(pid, local_path, self.mount_timeout)
        except Exception as exc:
            if not transition.cancelled:
                self.driver.terminate(pid, 0)
                self.driver.release(local_path)
            self._finish_mount(transition, record, error=exc)
            return

        self._finish_mount(transition, record)

    def _finish_mount(
        self,
        transition: _Transition,
        record: MountRecord,
        error: Optional[BaseException] = None,
    ) -> None:
        name = record.name
        with self._lock:
            if transition.cancelled:
                logger.info("Mount of %s cancelled by unmount", name)
                return
            if error is None:
                record = self._set(record.model_copy(update={"status": MountStatus.MOUNTED}))
            else:
                record = self._set(
                    record.model_copy(
                        update={
                            "status": MountStatus.ERROR,
                            "pid": None,
                            "error": _describe(error),
                        }
                    )
                )
            # cleared only after listeners saw the final status
            if self._inflight.get(name) is transition:
                del self._inflight[name]
        with self._changed:
            self._changed.notify_all()

        if error is None:
            logger.info("Mounted %s at %s (pid %s)", name, record.local_path, record.pid)
            self._audit("MOUNT", f"Mounted {name} at {record.local_path}")
        else:
            logger.error("Mount of %s failed: %s", name, record.error)
            self._audit("MOUNT_FAILED", f"Mount of {name} failed: {record.error}")

    # -- unmount ---------------------------------------------------------------

    def unmount(self, name: str) -> MountRecord:
        """Stop the mount for ``name`` and delete its record.

        Blocks until the driver process has exited (SIGKILL after
        ``unmount_grace``). A ``mounting`` transition is cancelled once
        its launch has resolved.

        Returns:
            Placeholder record with status ``unmounted``.

        Raises:
            NotFound: No mount record for ``name``.
            OperationInProgress: An unmount for ``name`` is already running.
            DriverError: The process could not be stopped; the record is
                left in ``error``.
        """
        with self._lock:
            record = self.registry.get(name)
            if record is None:
                raise NotFound(name, what="mount")
            pending = self._inflight.get(name)
            if pending is not None and pending.kind == "unmount":
                raise OperationInProgress(name)
            if pending is not None:
                pending.cancelled = True
            transition = _Transition("unmount")
            self._inflight[name] = transition

        try:
            pid = record.pid
            if pending is not None:
                pending.launched.wait()
                pid = pending.pid

            record = self._set(
                record.model_copy(update={"status": MountStatus.UNMOUNTING, "pid": pid})
            )
            self._teardown(record)
            self.registry.remove(name)
            self._notify(self._unmounted(name, record))
        finally:
            with self._lock:
                if self._inflight.get(name) is transition:
                    del self._inflight[name]
            with self._changed:
                self._changed.notify_all()

        logger.info("Unmounted %s", name)
        self._audit("UNMOUNT", f"Unmounted {name} from {record.local_path}")
        return self._unmounted(name, record)

    def _teardown(self, record: MountRecord) -> None:
        """Stop the driver process and remove the mount point directory.

        Raises:
            DriverError: If the process survives SIGKILL.
        """
        local_path = Path(record.local_path)
        if record.pid is not None and not self._owns(record):
            logger.warning(
                "pid %d is no longer the mount process for %s; not signalling it",
                record.pid, record.name,
            )
        elif record.pid is not None and not self.driver.terminate(record.pid, self.unmount_grace):
            error = DriverError(f"Mount process {record.pid} for {record.name} would not exit")
            self._set(record.model_copy(update={"status": MountStatus.ERROR, "error": str(error)}))
            raise error

        if not self.driver.release(local_path):
            logger.warning("%s is still mounted after the driver exited", local_path)
        _remove_mount_dir(local_path)

    # -- reconcile -------------------------------------------------------------

    def reconcile(self) -> list[MountRecord]:
        """Compare recorded state with process liveness and fix the records.

        - ``mounted`` whose process died, or whose pid now belongs to
          another program -> ``error``
        - ``mounted`` whose path left the mount table -> ``error``
        - ``unmounting`` whose process is gone -> removed (``unmounted``)
        - ``mounting`` with no live worker (left by a previous process)
          -> ``mounted`` if the process is up and the path is mounted,
          else ``error``

        Idempotent: a record already in ``error`` is left alone.

        Returns:
            Records whose state changed in this sweep.
        """
        changed: list[MountRecord] = []
        with self._lock:
            for record in self.registry.all():
                if record.name in self._inflight:
                    continue
                updated = self._reconcile_one(record)
                if updated is not None:
                    changed.append(updated)

        for record in changed:
            if record.status == MountStatus.ERROR:
                self._audit("MOUNT_LOST", f"{record.name}: {record.error}")
        return changed

    def _reconcile_one(self, record: MountRecord) -> Optional[MountRecord]:
        alive = self._owns(record)

        if record.status == MountStatus.MOUNTED and not alive:
            logger.warning("Mount process for %s (pid %s) is gone", record.name, record.pid)
            return self._set(
                record.model_copy(
                    update={
                        "status": MountStatus.ERROR,
                        "pid": None,
                        "error": f"Mount process {record.pid} exited unexpectedly",
                    }
                )
            )

        if record.status == MountStatus.MOUNTED and not self.driver.is_mounted(Path(record.local_path)):
            logger.warning("%s is no longer mounted", record.local_path)
            return self._set(
                record.model_copy(
                    update={
                        "status": MountStatus.ERROR,
                        "error": f"{record.local_path} is no longer mounted",
                    }
                )
            )

        if record.status == MountStatus.UNMOUNTING and not alive:
            local_path = Path(record.local_path)
            self.driver.release(local_path)
            _remove_mount_dir(local_path)
            self.registry.remove(record.name)
            gone = self._unmounted(record.name, record)
            self._notify(gone)
            return gone

        if record.status == MountStatus.MOUNTING:
            if alive and self.driver.is_mounted(Path(record.local_path)):
                return self._set(record.model_copy(update={"status": MountStatus.MOUNTED}))
            return self._set(
                record.model_copy(
                    update={
                        "status": MountStatus.ERROR,
                        "error": "Mount was interrupted before it became ready",
                    }
                )
            )

        return None

    # -- monitor ---------------------------------------------------------------

    def start_monitor(self, interval: float = 30.0) -> None:
        """Run :meth:`reconcile` every ``interval`` seconds on a daemon thread."""
        if self._monitor is not None and self._monitor.is_alive():
            return
        self._stop_event.clear()

        def loop() -> None:
            while not self._stop_event.wait(interval):
                try:
                    self.reconcile()
                except Exception as exc:
                    logger.error("Reconcile sweep failed: %s", exc)

        self._monitor = threading.Thread(target=loop, name="rmount-monitor", daemon=True)
        self._monitor.start()
        logger.debug("Mount monitor started (every %gs)", interval)

    def stop_monitor(self) -> None:
        self._stop_event.set()
        if self._monitor is not None:
            self._monitor.join(timeout=5)
            self._monitor = None

    def shutdown(self, unmount_all: bool = False) -> None:
        """Stop the monitor and optionally unmount everything."""
        self.stop_monitor()
        if not unmount_all:
            return
        for record in self.registry.all():
            try:
                self.unmount(record.name)
            except RMountError as exc:
                logger.error("Could not unmount %s on shutdown: %s", record.name, exc)

    # -- helpers ---------------------------------------------------------------

    def _set(self, record: MountRecord) -> MountRecord:
        """Persist ``record``; notify listeners if its status changed."""
        previous = self.registry.get(record.name)
        record = self.registry.put(
            record.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        )
        if previous is None or previous.status != record.status:
            self._notify(record)
        with self._changed:
            self._changed.notify_all()
        return record

    def _owns(self, record: MountRecord) -> bool:
        """Whether the record's pid is still its live mount process."""
        return record.pid is not None and self.driver.is_mount_process(
            record.pid, Path(record.local_path)
        )

    def _notify(self, record: MountRecord) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(record)
        except Exception as exc:
            logger.warning("Mount listener failed for %s: %s", record.name, exc)

    def _clear_stale(self, record: MountRecord) -> None:
        """Kill a leftover process and release a leftover mount from an earlier run."""
        if self._owns(record):
            logger.info("Stopping stale mount process %d for %s", record.pid, record.name)
            self.driver.terminate(record.pid, 0)
        self.driver.release(Path(record.local_path))

    def _prepare_mount_point(self, local_path: Path) -> None:
        local_path.mkdir(parents=True, exist_ok=True)
        if any(local_path.iterdir()):
            raise ValidationError(f"Mount point {local_path} is not empty")

    @staticmethod
    def _unmounted(name: str, record: Optional[MountRecord] = None) -> MountRecord:
        return MountRecord(
            name=name,
            remote_path=record.remote_path if record else "",
            local_path=record.local_path if record else "",
            status=MountStatus.UNMOUNTED,
        )

    def _audit(self, event_type: str, detail: str) -> None:
        if self.home is not None:
            audit_event(self.home, event_type, detail)


def _remove_mount_dir(local_path: Path) -> None:
    try:
        local_path.rmdir()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove mount point %s: %s", local_path, exc)
