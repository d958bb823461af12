# /vision_grabber/app/core/Local_LLM/LlamaCpp_Handler.py
# Description: Owns the locally managed llama-server process backing the local backend.
#
import asyncio
import atexit
import os
import platform
import signal
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set
#
# Third-party imports
import psutil
from loguru import logger
#
# Local imports
from vision_grabber.app.core.Backends import http_utils
from vision_grabber.app.core.config import AppSettings, SettingsManager
from .LLM_Inference_Exceptions import LLMInferenceLibError, ModelNotFoundError, ServerError


LOOPBACK_HOST = "127.0.0.1"
READY_TIMEOUT = 120.0
STOP_TIMEOUT = 10.0
STATUS_PREFIX = "Local Model"


async def wait_for_http_ready(*args, **kwargs):
    """Proxy wait_for_http_ready so tests can monkeypatch either module."""
    return await http_utils.wait_for_http_ready(*args, **kwargs)
#########################################################################################################################
#
# Classes:

class LlamaServerManager:
    """Start/stop orchestration for the single llama-server process.

    ``start`` and ``stop`` are idempotent and serialized by one lock, so the UI,
    relay startup and default-service startup can all call them concurrently.
    Neither raises: failures are logged and reported on the status callback.
    """

    def __init__(
        self,
        settings_manager: SettingsManager,
        on_status: Optional[Callable[[str], None]] = None,
        log_path: Optional[Path] = None,
    ):
        self.settings_manager = settings_manager
        self.on_status = on_status
        self.log_path = Path(log_path) if log_path else None

        self._lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()
        self._active_server_process: Optional[asyncio.subprocess.Process] = None
        self._active_server_port: Optional[int] = None
        self._active_server_model: Optional[str] = None
        self._active_server_log_handle = None
        self.last_error: Optional[str] = None
        self.metrics = {
            "starts": 0,
            "stops": 0,
            "start_errors": 0,
            "strays_terminated": 0,
        }

        atexit.register(self._cleanup_managed_server_sync)

    @property
    def settings(self) -> AppSettings:
        return self.settings_manager.current

    @property
    def is_running(self) -> bool:
        proc = self._active_server_process
        return proc is not None and proc.returncode is None

    @property
    def port(self) -> Optional[int]:
        return self._active_server_port if self.is_running else None

    @property
    def base_url(self) -> str:
        port = self._active_server_port or self._configured_port()
        return f"http://{LOOPBACK_HOST}:{port}"

    def _report(self, status: str) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception as e:
            logger.warning(f"Status callback raised: {e}")

    def _configured_port(self) -> int:
        raw = str(self.settings.LocalLlamaPort).strip()
        try:
            port = int(raw)
        except ValueError:
            raise ServerError(f"Local llama-server port '{raw}' is not a number.")
        if not 1 <= port <= 65535:
            raise ServerError(f"Local llama-server port {port} is out of range.")
        return port

    def build_command(self) -> List[str]:
        """Assemble the llama-server command line from the current settings."""
        settings = self.settings
        executable = Path(settings.LocalLlamaPath).expanduser() if settings.LocalLlamaPath else None
        if executable is None or not executable.is_file():
            raise ServerError(f"llama-server executable not found at '{settings.LocalLlamaPath}'.")
        model_path = Path(settings.LocalModelPath).expanduser() if settings.LocalModelPath else None
        if model_path is None or not model_path.is_file():
            raise ModelNotFoundError(f"Model file '{settings.LocalModelPath}' not found.")

        ctx_raw = str(settings.LocalContextSize).strip() or "2048"
        try:
            ctx_size = int(ctx_raw)
        except ValueError:
            raise ServerError(f"Context size '{ctx_raw}' is not a number.")

        command = [str(executable), "-m", str(model_path)]
        if settings.LocalMmprojPath:
            mmproj = Path(settings.LocalMmprojPath).expanduser()
            if not mmproj.is_file():
                raise ModelNotFoundError(f"Multimodal projector '{settings.LocalMmprojPath}' not found.")
            command += ["--mmproj", str(mmproj)]
        command += ["--host", LOOPBACK_HOST, "--port", str(self._configured_port()), "-c", str(ctx_size)]
        return command

    # --- Stray instances ---
    def _terminate_stray_instances(self, executable: str) -> int:
        """Terminate llama-server processes left behind by an unclean shutdown."""
        exe_name = Path(executable).name.lower()
        own_pid = self._active_server_process.pid if self._active_server_process else None
        strays = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                name = (proc.info.get("name") or "").lower()
                if name == exe_name and proc.pid != own_pid and proc.pid != os.getpid():
                    proc.terminate()
                    strays.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if not strays:
            return 0
        _, alive = psutil.wait_procs(strays, timeout=5)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        logger.info(f"Terminated {len(strays)} stray {exe_name} process(es).")
        return len(strays)

    # --- Server Management ---
    async def start(self) -> bool:
        """Launch llama-server unless it is already running.

        Returns True when the server is running afterwards.
        """
        async with self._lock:
            if self.is_running:
                return True
            # A process that exited on its own is forgotten before relaunching
            self._clear_state()
            self._report(f"{STATUS_PREFIX}: Starting...")
            try:
                return await self._launch()
            except LLMInferenceLibError as e:
                self.metrics["start_errors"] += 1
                self.last_error = str(e)
                logger.error(f"llama-server failed to start: {e}")
                self._report(f"{STATUS_PREFIX}: Failed to start ({e})")
                return False

    async def _launch(self) -> bool:
        command = self.build_command()
        port = self._configured_port()

        try:
            self.metrics["strays_terminated"] += await asyncio.to_thread(self._terminate_stray_instances, command[0])
        except Exception as e:
            logger.warning(f"Could not clean up stray llama-server processes: {e}")

        redacted_cmd = http_utils.redact_cmd_args(command)
        logger.info(f"Starting llama-server on {LOOPBACK_HOST}:{port} with command: {' '.join(redacted_cmd)}")

        log_file_handle = None
        output = asyncio.subprocess.DEVNULL
        if self.log_path:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file_handle = open(self.log_path, "ab")
                output = log_file_handle
            except OSError as e:
                logger.error(f"Could not open log file {self.log_path}: {e}. Discarding server output.")

        cpe_kwargs: Dict[str, Any] = dict(stdout=output, stderr=output)
        if platform.system() != "Windows":
            cpe_kwargs["start_new_session"] = True
        else:
            cpe_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(
                subprocess, "CREATE_NO_WINDOW", 0
            )

        try:
            process = await asyncio.create_subprocess_exec(*command, **cpe_kwargs)
        except OSError as e:
            if log_file_handle:
                log_file_handle.close()
            raise ServerError(f"Could not launch llama-server: {e}")

        base_url = f"http://{LOOPBACK_HOST}:{port}"
        is_ready = await wait_for_http_ready(base_url, timeout_total=READY_TIMEOUT, interval=0.5)
        if process.returncode is not None or not is_ready:
            logger.error(f"llama-server did not become ready. Exit code: {process.returncode}")
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
            if log_file_handle:
                log_file_handle.close()
            raise ServerError(f"llama-server did not become ready (exit code {process.returncode})")

        self._active_server_process = process
        self._active_server_port = port
        self._active_server_model = Path(command[2]).name
        self._active_server_log_handle = log_file_handle
        self.last_error = None
        self.metrics["starts"] += 1
        logger.info(f"llama-server started on {LOOPBACK_HOST}:{port} with PID {process.pid}.")
        self._report(f"{STATUS_PREFIX}: Running on Port {port}")
        return True

    async def stop(self) -> None:
        """Terminate the managed process; safe to call when nothing runs."""
        async with self._lock:
            process_to_stop = self._active_server_process
            if process_to_stop is None:
                return
            pid = process_to_stop.pid
            logger.info(f"Stopping llama-server (PID: {pid}).")
            try:
                if process_to_stop.returncode is None:
                    await self._terminate(process_to_stop)
                else:
                    logger.info(f"llama-server PID {pid} had already exited (return code: {process_to_stop.returncode}).")
            except Exception as e:
                logger.error(f"Error stopping llama-server PID {pid}: {e}")
            finally:
                self._clear_state()
                self.metrics["stops"] += 1
            self._report(f"{STATUS_PREFIX}: Stopped")

    async def _terminate(self, process) -> None:
        pid = process.pid
        if platform.system() == "Windows":
            process.terminate()
        else:
            try:
                pgid = await asyncio.to_thread(os.getpgid, pid)
                await asyncio.to_thread(os.killpg, pgid, signal.SIGTERM)
            except ProcessLookupError:
                logger.warning(f"Process {pid} not found for SIGTERM, likely already terminated.")
                return
            except OSError as e_pg:
                logger.warning(f"Failed to signal process group of {pid}: {e_pg}. Falling back to PID.")
                process.terminate()

        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
            logger.info(f"llama-server PID {pid} terminated gracefully.")
        except asyncio.TimeoutError:
            logger.warning(f"llama-server PID {pid} did not terminate gracefully. Killing.")
            if platform.system() == "Windows":
                process.kill()
            else:
                try:
                    os.killpg(os.getpgid(pid), signal.SIGKILL)
                except (ProcessLookupError, PermissionError, OSError) as e:
                    logger.warning(f"Failed to kill process group of {pid}: {e}. Falling back to kill.")
                    process.kill()

    def _clear_state(self) -> None:
        if self._active_server_log_handle:
            self._active_server_log_handle.close()
            self._active_server_log_handle = None
        self._active_server_process = None
        self._active_server_port = None
        self._active_server_model = None

    # --- Fire-and-forget helpers ---
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def start_in_background(self) -> asyncio.Task:
        """Schedule ``start`` without waiting for process launch."""
        return self._spawn(self.start())

    def stop_in_background(self) -> asyncio.Task:
        return self._spawn(self.stop())

    def get_server_status(self) -> Dict[str, Any]:
        if self.is_running:
            return {
                "status": "running",
                "pid": self._active_server_process.pid,
                "model": self._active_server_model,
                "port": self._active_server_port,
                "host": LOOPBACK_HOST,
            }
        return {"status": "stopped", "pid": None, "model": None, "port": None, "host": None,
                "last_error": self.last_error}

    # --- Cleanup ---
    def _cleanup_managed_server_sync(self):
        # Runs at interpreter exit; logging sinks may already be closed.
        proc = self._active_server_process
        if proc is None or proc.returncode is not None:
            return
        try:
            if platform.system() == "Windows":
                proc.terminate()
            else:
                os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            try:
                proc.kill()
            except (ProcessLookupError, OSError):
                pass
        if self._active_server_log_handle:
            self._active_server_log_handle.close()
        self._active_server_process = None

#
# End of LlamaCpp_Handler.py
########################################################################################################################
