"""
Runtime supervisor for Barvaz DNS.

This module starts the control listener and the reconciliation scheduler,
waits until one of them ends or a stop is requested, and reports the
service state to the process lifecycle manager.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING

from barvaz_dns.config import ConfigStore, dump_config
from barvaz_dns.handoff import LatestSlot, StatusCell
from barvaz_dns.listener import ControlListener
from barvaz_dns.logging_config import LoggingSetupError, setup_logging
from barvaz_dns.providers.duckdns import DuckDNSProvider
from barvaz_dns.scheduler import ReconciliationScheduler

if TYPE_CHECKING:
    from barvaz_dns.config import RuntimeSettings, ServiceConfig
    from barvaz_dns.providers.base import BaseDNSProvider


logger = logging.getLogger(__name__)


class ServiceState(StrEnum):
    """
    States reported to the process lifecycle manager.

    Attributes
    ----------
    STARTING : str
        Startup in progress.
    RUNNING : str
        Listener and scheduler are running.
    STOPPED : str
        The service has stopped (see the exit code).
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class ExitCode(IntEnum):
    """
    Termination codes of the service.

    Attributes
    ----------
    OK : int
        Normal stop.
    CONFIG : int
        The configuration directory or file could not be created or read.
    LOGGING : int
        Logging could not be initialized.
    """

    OK = 0
    CONFIG = 1
    LOGGING = 2


class LifecycleManager(ABC):
    """Process lifecycle manager the service reports to and takes stop requests from."""

    @abstractmethod
    def report_state(self, state: ServiceState, exit_code: ExitCode = ExitCode.OK) -> None:
        """
        Report a state change.

        Parameters
        ----------
        state : ServiceState
            The new state.
        exit_code : ExitCode, optional
            Termination code, meaningful with `ServiceState.STOPPED`.
        """
        ...

    @abstractmethod
    async def wait_for_stop(self) -> None:
        """Return once a stop has been requested."""
        ...


class SignalLifecycleManager(LifecycleManager):
    """
    Lifecycle manager for a foreground process.

    SIGINT and SIGTERM request a stop; state reports are logged.

    Attributes
    ----------
    state : ServiceState | None
        The last reported state.
    exit_code : ExitCode
        The last reported exit code.
    """

    def __init__(self) -> None:
        self.state: ServiceState | None = None
        self.exit_code = ExitCode.OK
        self._stop = asyncio.Event()

    def install_signal_handlers(self) -> None:
        """Turn SIGINT and SIGTERM into stop requests on the running loop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Event loops without signal support (e.g. on Windows)
                signal.signal(
                    sig,
                    lambda *_: loop.call_soon_threadsafe(self.request_stop),
                )

    def request_stop(self) -> None:
        """Request the service to stop."""
        if not self._stop.is_set():
            logger.info("Stop requested.")
            self._stop.set()

    def report_state(self, state: ServiceState, exit_code: ExitCode = ExitCode.OK) -> None:
        """Record and log the new state."""
        self.state = state
        self.exit_code = exit_code
        if exit_code is ExitCode.OK:
            logger.debug("Service state: %s.", state)
        else:
            logger.error("Service state: %s (exit code %d).", state, exit_code)

    async def wait_for_stop(self) -> None:
        """Wait for SIGINT, SIGTERM or `request_stop`."""
        await self._stop.wait()


class Supervisor:
    """
    Runs the listener and the scheduler until one of them ends or a stop
    is requested.

    Attributes
    ----------
    listener : ControlListener
        The control listener.
    scheduler : ReconciliationScheduler
        The reconciliation scheduler.
    lifecycle : LifecycleManager
        Receives state reports and stop requests.
    """

    def __init__(
        self,
        listener: ControlListener,
        scheduler: ReconciliationScheduler,
        lifecycle: LifecycleManager,
    ) -> None:
        self.listener = listener
        self.scheduler = scheduler
        self.lifecycle = lifecycle

    async def run(self) -> None:
        """
        Run until the first of the three tasks completes.

        The remaining tasks are cancelled and awaited so that their sockets
        and connections are released.
        """
        # Force an update as soon as the service has started
        self.listener.publish()

        tasks = [
            asyncio.create_task(self.listener.serve_forever(), name="listener"),
            asyncio.create_task(self.scheduler.run_forever(), name="scheduler"),
            asyncio.create_task(self.lifecycle.wait_for_stop(), name="shutdown"),
        ]

        self.lifecycle.report_state(ServiceState.RUNNING)
        logger.info("Service has started.")

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                self._log_completion(task)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _log_completion(task: asyncio.Task[None]) -> None:
        name = task.get_name()
        if name == "shutdown":
            logger.info("Shutdown has been initiated.")
            return

        error = None if task.cancelled() else task.exception()
        if error is not None:
            logger.error(
                "The %s loop has ended unexpectedly: %s",
                name,
                error,
                exc_info=error,
            )
        else:
            logger.error("The %s loop has ended unexpectedly.", name)


async def run_service(
    settings: RuntimeSettings,
    lifecycle: LifecycleManager,
    provider: BaseDNSProvider | None = None,
) -> ExitCode:
    """
    Start the service and run it until it stops.

    Parameters
    ----------
    settings : RuntimeSettings
        Process settings.
    lifecycle : LifecycleManager
        Receives state reports and stop requests.
    provider : BaseDNSProvider | None, optional
        DNS update client. Defaults to DuckDNS.

    Returns
    -------
    ExitCode
        `ExitCode.OK` after a stop, or the code of the startup failure.
    """
    lifecycle.report_state(ServiceState.STARTING)

    # Also creates the directory the log file lives in
    store = ConfigStore(settings.config_path)
    try:
        store.ensure_directory()
    except OSError as e:
        logger.critical("Failed to create the configuration directory: %s", e)
        lifecycle.report_state(ServiceState.STOPPED, ExitCode.CONFIG)
        return ExitCode.CONFIG

    try:
        setup_logging(
            settings.log_level,
            settings.config_dir if settings.log_file_enabled else None,
        )
    except LoggingSetupError as e:
        logger.critical("Failed to initialize logging: %s", e)
        lifecycle.report_state(ServiceState.STOPPED, ExitCode.LOGGING)
        return ExitCode.LOGGING

    try:
        store.load_or_create()
    except OSError as e:
        logger.critical("Failed to read the configuration: %s", e)
        lifecycle.report_state(ServiceState.STOPPED, ExitCode.CONFIG)
        return ExitCode.CONFIG

    logger.debug(
        "Service is running with the following configuration:\n%s",
        dump_config(store.config),
    )

    updates: LatestSlot[ServiceConfig] = LatestSlot()
    status = StatusCell(succeeded=False)
    listener = ControlListener(settings.socket_path, store, updates, status)
    scheduler = ReconciliationScheduler(
        updates,
        status,
        provider if provider is not None else DuckDNSProvider(),
    )

    await Supervisor(listener, scheduler, lifecycle).run()

    lifecycle.report_state(ServiceState.STOPPED, ExitCode.OK)
    logger.info("Service has stopped.")
    return ExitCode.OK
