"""Main entry point for the Terraform Cloud workspace operator.

The control loop watches the resource store and reconciles one workspace
at a time. Each pass returns when it wants to run again; a resource whose
spec, finalizers or deletion marker changed is reconciled right away.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
import time
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .events import EventRecorder
from .models import WorkspaceResource
from .reconciler import WorkspaceReconciler
from .store import FileKeyValueStore, FileResourceStore, ResourceStore, StoreError
from .terraform import ConfigStore
from .tfc_client import TerraformCloudClient

# Upper bound on how long the loop sleeps before looking for changed resources
WATCH_INTERVAL_SECONDS = 5

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields passed through `extra={...}`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def fingerprint(resource: WorkspaceResource) -> str:
    """Digest of everything a user changes on a resource (not its status)."""
    data = {
        "spec": resource.spec.model_dump(mode="json", by_alias=True),
        "finalizers": resource.metadata.finalizers,
        "deletionTimestamp": (
            resource.metadata.deletion_timestamp.isoformat()
            if resource.metadata.deletion_timestamp
            else None
        ),
    }
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()


class ControlLoop:
    """Requeue-driven loop over every resource in the store."""

    def __init__(
        self,
        reconciler: WorkspaceReconciler,
        store: ResourceStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._store = store
        self._logger = logger or logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()
        # key -> monotonic time of the next pass (None: only on change)
        self._due: dict[str, float | None] = {}
        self._fingerprints: dict[str, str] = {}

    def shutdown(self) -> None:
        """Signal the loop to stop after the current pass."""
        self._logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _changed(self, key: str) -> bool:
        try:
            resource = self._store.get(key)
        except StoreError as e:
            self._logger.error("Could not read resource", extra={"resource": key, "error": str(e)})
            return False
        if resource is None:
            return False
        return fingerprint(resource) != self._fingerprints.get(key)

    def _remember(self, key: str) -> None:
        try:
            resource = self._store.get(key)
        except StoreError:
            resource = None
        if resource is None:
            self._fingerprints.pop(key, None)
            self._due.pop(key, None)
        else:
            self._fingerprints[key] = fingerprint(resource)

    async def run_once(self) -> float:
        """Reconcile every key that is due or changed.

        Returns:
            Seconds until the next key is due, capped at the watch interval.
        """
        keys = self._store.list_keys()
        for stale in set(self._due) - set(keys):
            self._due.pop(stale, None)
            self._fingerprints.pop(stale, None)

        for key in keys:
            if self._shutdown_event.is_set():
                break
            due = self._due.get(key)
            now = time.monotonic()
            if not (self._changed(key) or (due is not None and due <= now)):
                continue

            result = await self._reconciler.reconcile(key)
            if result.requeue_after_seconds is None:
                self._due[key] = None
            else:
                self._due[key] = time.monotonic() + result.requeue_after_seconds
            self._remember(key)

        now = time.monotonic()
        pending = [due - now for due in self._due.values() if due is not None]
        return max(0.0, min([WATCH_INTERVAL_SECONDS, *pending]))

    async def run(self) -> None:
        """Run until shutdown is requested."""
        self._logger.info("Starting control loop")
        while not self._shutdown_event.is_set():
            wait_seconds = await self.run_once()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=wait_seconds)
            except TimeoutError:
                pass
        self._logger.info("Control loop shutdown complete")


def build_reconciler(
    config: Config,
    client: TerraformCloudClient,
    recorder: EventRecorder | None = None,
    logger: logging.Logger | None = None,
) -> tuple[WorkspaceReconciler, FileResourceStore]:
    """Wire a reconciler to the file-backed stores named by the configuration."""
    store = FileResourceStore(config.workspaces_dir)
    reconciler = WorkspaceReconciler(
        client=client,
        store=store,
        config_store=ConfigStore(FileKeyValueStore(config.configs_dir)),
        output_store=FileKeyValueStore(config.outputs_dir),
        recorder=recorder or EventRecorder(),
        config=config,
        logger=logger,
    )
    return reconciler, store


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger("tfc_operator")

    try:
        config = Config.from_env()
        client = TerraformCloudClient.from_config(config)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Terraform Cloud workspace operator",
        extra={
            "tf_url": config.tf_url,
            "workspaces_dir": str(config.workspaces_dir),
            "interval_seconds": config.reconcile_interval_seconds,
        },
    )

    async with client:
        reconciler, store = build_reconciler(config, client, logger=logger)
        loop = ControlLoop(reconciler, store, logger)

        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            event_loop.add_signal_handler(sig, loop.shutdown)

        try:
            await loop.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
