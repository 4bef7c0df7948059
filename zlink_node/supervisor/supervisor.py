"""
Node supervisor

Decides whether to attach to a running daemon or launch an embedded one,
owns the embedded daemon's process lifetime and publishes NodeProcessState.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from zlink_node.config.config_manager import Config
from zlink_node.core.events import StatePublisher
from zlink_node.core.exceptions import (
    ConfigurationError,
    ProcessError,
    RPCApplicationError,
    RPCAuthError,
    RPCConnectionError,
    RPCError,
    ZlinkError,
)
from zlink_node.core.types import (
    ConnectionType,
    NodeEndpoint,
    NodeProcessState,
    ProcessStatus,
    RestartReason,
)
from zlink_node.rpc.client import DaemonRPCClient
from zlink_node.rpc.methods import DaemonAPI
from zlink_node.supervisor.daemon_conf import (
    DaemonConfFile,
    endpoint_from_conf,
    endpoint_from_settings,
    locate_conf_file,
    resolve_data_dir,
)
from zlink_node.supervisor.params import ParamsFetcher
from zlink_node.utils.helpers import Backoff, PIDManager, RetryManager

logger = logging.getLogger("zlink_node.supervisor")

ProcessLauncher = Callable[[List[str]], Awaitable[Any]]
RestartReasons = Union[Iterable[RestartReason], Mapping[RestartReason, bool]]
APIFactory = Callable[[NodeEndpoint], DaemonAPI]

TERMINATE_GRACE = 10.0


class _NotReady(Exception):
    """Daemon answered but is still warming up"""


async def launch_subprocess(argv: List[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL
    )


class NodeSupervisor:
    """
    Owns NodeProcessState and, in embedded mode, the daemon process.

    Launcher and API factory are injectable; the defaults spawn a real
    subprocess and talk to it over DaemonRPCClient.
    """

    def __init__(self, config: Config,
                 launcher: Optional[ProcessLauncher] = None,
                 api_factory: Optional[APIFactory] = None,
                 params_fetcher: Optional[ParamsFetcher] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.launcher = launcher or launch_subprocess
        self.api_factory = api_factory or self._default_api
        self.params_fetcher = params_fetcher or ParamsFetcher(config.daemon)
        self.sleep = sleep

        self.state: StatePublisher[NodeProcessState] = StatePublisher("node_process", NodeProcessState())
        self.endpoint: Optional[NodeEndpoint] = None
        self.process = None

        self.conf_path: Path = locate_conf_file(config.daemon)
        self.pidfile: Path = resolve_data_dir(config.daemon) / "zlink-daemon.pid"

        self._api: Optional[DaemonAPI] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._lock = asyncio.Lock()

    def _default_api(self, endpoint: NodeEndpoint) -> DaemonAPI:
        return DaemonAPI(DaemonRPCClient(endpoint, timeout=self.config.rpc.timeout))

    def _publish(self, status: ProcessStatus, **changes):
        new_state = self.state.value.transition(status, **changes)
        logger.info(f"Daemon state: {status.value}"
                    + (f" ({new_state.reason.value})" if new_state.reason else "")
                    + (f" - {new_state.error}" if new_state.error else ""))
        self.state.publish(new_state)

    def _fail(self, error: ZlinkError, mode: Optional[ConnectionType]):
        self._publish(ProcessStatus.FAILED, error=str(error), mode=mode, pid=None)

    async def start(self) -> NodeEndpoint:
        """
        Bring a daemon up and return the live endpoint

        Raises:
            RPCAuthError: an external daemon rejected the credentials
            ProcessError: no daemon reachable and none could be launched
        """
        async with self._lock:
            current = self.state.value
            if current.is_running and self.endpoint is not None:
                return self.endpoint

            self._publish(ProcessStatus.STARTING, mode=None, pid=None)

            try:
                endpoint, mode = self._external_candidate()
            except ConfigurationError as e:
                self._fail(e, None)
                raise
            if endpoint is not None:
                try:
                    reachable = await self._probe(endpoint)
                except RPCAuthError as e:
                    self._fail(e, mode)
                    raise
                if reachable:
                    return await self._attach(endpoint, mode)

            if not self.config.daemon.allow_embedded:
                target = endpoint or endpoint_from_settings(self.config.rpc)
                error = ProcessError(
                    f"No daemon is reachable at {target} and launching an embedded "
                    f"daemon is disabled")
                self._fail(error, None)
                raise error

            return await self._start_embedded([])

    def _external_candidate(self) -> Tuple[Optional[NodeEndpoint], Optional[ConnectionType]]:
        if self.conf_path.exists():
            try:
                conf = DaemonConfFile.load(self.conf_path)
            except OSError as e:
                raise ConfigurationError(f"Cannot read daemon conf {self.conf_path}", str(e))
            return endpoint_from_conf(conf, self.config.rpc), ConnectionType.DETECTED_CONF_EXTERNAL
        if self.config.rpc.user:
            return endpoint_from_settings(self.config.rpc), ConnectionType.SETTINGS_EXTERNAL
        return None, None

    async def _probe(self, endpoint: NodeEndpoint) -> bool:
        api = self.api_factory(endpoint)
        try:
            await api.get_info(timeout=self.config.daemon.probe_timeout)
            return True
        except RPCApplicationError as e:
            # Answering at all means something is serving RPC there
            logger.info(f"Daemon at {endpoint} answered the probe with: {e}")
            return True
        except RPCAuthError:
            raise
        except RPCError as e:
            logger.info(f"No daemon answering at {endpoint}: {e}")
            return False
        finally:
            await api.close()

    async def _attach(self, endpoint: NodeEndpoint, mode: ConnectionType) -> NodeEndpoint:
        logger.info(f"Attaching to external daemon at {endpoint}")
        self.endpoint = endpoint
        self.process = None
        self._publish(ProcessStatus.RUNNING, mode=mode, pid=None)
        return endpoint

    def _prepare_conf(self) -> DaemonConfFile:
        if self.conf_path.exists():
            conf = DaemonConfFile.load(self.conf_path)
            changed = conf.apply_settings(self.config.daemon)
            if not conf.get("rpcuser") or not conf.get("rpcpassword"):
                defaults = DaemonConfFile.create_default(self.config.daemon, self.config.rpc)
                conf.entries.setdefault("rpcuser", defaults.entries["rpcuser"])
                conf.entries.setdefault("rpcpassword", defaults.entries["rpcpassword"])
                changed = True
            if changed:
                conf.save()
            return conf

        conf = DaemonConfFile.create_default(self.config.daemon, self.config.rpc)
        conf.save(self.conf_path)
        return conf

    def build_command(self, flags: Sequence[str]) -> List[str]:
        daemon = self.config.daemon
        argv = [daemon.binary, f"-conf={self.conf_path}"]
        if daemon.data_dir:
            argv.append(f"-datadir={resolve_data_dir(daemon)}")
        argv.extend(daemon.extra_args)
        argv.extend(flag for flag in flags if flag not in argv)
        return argv

    async def _start_embedded(self, flags: Sequence[str]) -> NodeEndpoint:
        mode = ConnectionType.EMBEDDED
        try:
            conf = self._prepare_conf()
            endpoint = endpoint_from_conf(conf, self.config.rpc)

            leftover = PIDManager.stale_pid(self.pidfile)
            if leftover is not None:
                raise ProcessError(f"A daemon launched earlier (pid {leftover}) is still running "
                                   f"but does not answer RPC at {endpoint}")

            if self.config.daemon.fetch_params:
                await self.params_fetcher.ensure()

            argv = self.build_command(flags)
            logger.info(f"Launching embedded daemon: {' '.join(argv)}")
            try:
                process = await self.launcher(argv)
            except OSError as e:
                raise ProcessError(f"Could not launch {self.config.daemon.binary}", str(e))
        except ZlinkError as e:
            self._fail(e, mode)
            raise
        except OSError as e:
            error = ProcessError("Could not prepare the embedded daemon", str(e))
            self._fail(error, mode)
            raise error

        self.process = process
        self._stopping = False
        PIDManager.write_pid_file(self.pidfile, process.pid)
        self._publish(ProcessStatus.STARTING, mode=mode, pid=process.pid)

        try:
            await self._wait_ready(endpoint, process)
        except ZlinkError as e:
            await self._terminate(process)
            PIDManager.remove_pid_file(self.pidfile)
            self.process = None
            self._fail(e, mode)
            raise

        self.endpoint = endpoint
        self._api = self.api_factory(endpoint)
        self._publish(ProcessStatus.RUNNING, mode=mode, pid=process.pid)
        self._watch_task = asyncio.create_task(self._watch_process(process))
        return endpoint

    async def _wait_ready(self, endpoint: NodeEndpoint, process):
        daemon = self.config.daemon
        retry = RetryManager(
            max_retries=daemon.readiness_retries,
            backoff=Backoff(daemon.readiness_base_delay, daemon.readiness_max_delay),
            retry_on=(RPCConnectionError, _NotReady),
            sleep=self.sleep
        )
        api = self.api_factory(endpoint)

        async def attempt():
            if process.returncode is not None:
                raise ProcessError("Daemon exited during startup",
                                   f"exit code {process.returncode}",
                                   returncode=process.returncode)
            try:
                return await api.get_info(timeout=daemon.probe_timeout)
            except RPCApplicationError as e:
                if e.warming_up:
                    raise _NotReady(e.message)
                raise

        try:
            await retry.execute(attempt)
        except (RPCConnectionError, _NotReady) as e:
            raise ProcessError(
                f"Daemon did not become ready after {daemon.readiness_retries} retries", str(e))
        except RPCError as e:
            raise ProcessError("Daemon rejected the readiness probe", str(e))
        finally:
            await api.close()

    async def _watch_process(self, process):
        returncode = await process.wait()
        if self._stopping or self.process is not process:
            return
        logger.error(f"Embedded daemon exited unexpectedly with code {returncode}")
        PIDManager.remove_pid_file(self.pidfile)
        self.process = None
        self.endpoint = None
        self._fail(ProcessError("Daemon exited unexpectedly", f"exit code {returncode}",
                                returncode=returncode), ConnectionType.EMBEDDED)

    async def _terminate(self, process):
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning(f"Daemon {process.pid} ignored terminate, killing it")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def stop(self):
        """Stop an embedded daemon; detach from an external one"""
        state = self.state.value
        if state.mode is not ConnectionType.EMBEDDED or self.process is None:
            logger.info("Detaching from daemon")
            self.endpoint = None
            if state.status not in (ProcessStatus.NOT_STARTED, ProcessStatus.FAILED):
                self._publish(ProcessStatus.STOPPED, mode=state.mode, pid=None)
            return

        process = self.process
        self._stopping = True
        try:
            if self._api is not None:
                try:
                    await self._api.stop()
                except RPCError as e:
                    logger.warning(f"RPC stop failed, terminating process: {e}")
            try:
                await asyncio.wait_for(process.wait(), self.config.daemon.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Daemon did not exit within {self.config.daemon.stop_timeout}s")
                await self._terminate(process)
        finally:
            if self._watch_task is not None:
                self._watch_task.cancel()
                self._watch_task = None
            if self._api is not None:
                await self._api.close()
                self._api = None
            PIDManager.remove_pid_file(self.pidfile)
            self.process = None
            self.endpoint = None
            self._stopping = False

        self._publish(ProcessStatus.STOPPED, mode=ConnectionType.EMBEDDED, pid=None)

    def _toggle_enabled(self, reason: RestartReason) -> bool:
        # A toggle raised as a restart reason but never set means switch it on
        return getattr(self.config.daemon, reason.conf_key) is not False

    def _launch_flags(self, reasons: Sequence[RestartReason]) -> List[str]:
        flags = set()
        for reason in reasons:
            if reason is RestartReason.SHIELDED_INDEX and not self._toggle_enabled(reason):
                # Dropping the shielded index needs no rebuild
                continue
            if reason.command_line_flag:
                flags.add(reason.command_line_flag)
        return sorted(flags)

    def restart_instruction(self, reasons: Sequence[RestartReason]) -> str:
        """What the user must do to apply reasons to a daemon we do not own"""
        toggles = [r for r in reasons if r.conf_key]
        flags = self._launch_flags(reasons)
        steps = []
        if toggles:
            settings = ", ".join(f"{r.conf_key}={1 if self._toggle_enabled(r) else 0}" for r in toggles)
            steps.append(f"set {settings} in {self.conf_path}")
        if flags:
            steps.append(f"restart the daemon with {' '.join(flags)}")
        else:
            steps.append("restart the daemon")
        return "Please " + " and ".join(steps)

    def flag_restart_required(self, reason: RestartReason):
        """Surface that the running daemon lacks something only a restart can apply"""
        state = self.state.value
        error = None
        if state.mode is not ConnectionType.EMBEDDED:
            error = self.restart_instruction([reason])
        self._publish(ProcessStatus.NEEDS_RESTART, reason=reason, error=error,
                      mode=state.mode, pid=state.pid)

    async def restart_with_flags(self, reasons: RestartReasons) -> NodeProcessState:
        """
        Restart the daemon so that reasons take effect

        An external daemon is left in NeedsRestart with an instruction for
        the user; an embedded one is stopped and relaunched.

        Toggle reasons (consolidation, deletetx, zindex) are applied the way
        the daemon settings hold them. Passing a mapping such as
        ``{RestartReason.CONSOLIDATION: False}`` sets the value as well.
        """
        wanted: Dict[RestartReason, Optional[bool]]
        if isinstance(reasons, Mapping):
            wanted = dict(reasons)
        else:
            wanted = {reason: None for reason in reasons}
        if not wanted:
            raise ValueError("restart_with_flags needs at least one reason")
        reasons = list(wanted)

        async with self._lock:
            for reason, enabled in wanted.items():
                if reason.conf_key and enabled is not None:
                    setattr(self.config.daemon, reason.conf_key, bool(enabled))

            state = self.state.value
            if state.mode is not ConnectionType.EMBEDDED:
                self._publish(ProcessStatus.NEEDS_RESTART, reason=reasons[0],
                              error=self.restart_instruction(reasons),
                              mode=state.mode, pid=state.pid)
                return self.state.value

            self._publish(ProcessStatus.NEEDS_RESTART, reason=reasons[0],
                          mode=state.mode, pid=state.pid)
            for reason in reasons:
                if reason.conf_key:
                    setattr(self.config.daemon, reason.conf_key, self._toggle_enabled(reason))

            await self.stop()
            flags = self._launch_flags(reasons)
            self._publish(ProcessStatus.STARTING, mode=ConnectionType.EMBEDDED, pid=None)
            await self._start_embedded(flags)
            return self.state.value
