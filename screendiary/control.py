from __future__ import annotations

import asyncio
import json
import socket
from typing import Optional

from .config import ServiceSettings
from .models import ServiceCommand, ServiceResponse
from .service_state import ServiceStateManager, StatePersistenceError
from .supervisor import CaptureSupervisor

READ_CHUNK_BYTES = 1024
MAX_COMMAND_BYTES = 16 * 1024
MAX_REPLY_BYTES = 64 * 1024
COMMAND_READ_TIMEOUT_SECONDS = 5.0
LOOPBACK_HOST = "127.0.0.1"

INVALID_COMMAND = "invalid command"


class ControlError(RuntimeError):
    pass


class ServiceNotRunning(ControlError):
    pass


class ControlTimeout(ControlError):
    pass


class ProtocolError(ControlError):
    pass


def encode_command(command: ServiceCommand) -> bytes:
    return json.dumps(command.value).encode("utf-8")


def parse_command(value) -> ServiceCommand:
    if not isinstance(value, str):
        raise ValueError(f"command must be a string, got {type(value).__name__}")
    return ServiceCommand(value)


def encode_response(response: ServiceResponse) -> bytes:
    return json.dumps(response.to_dict(), ensure_ascii=False).encode("utf-8")


def decode_response(data: bytes) -> ServiceResponse:
    try:
        return ServiceResponse.from_dict(json.loads(data.decode("utf-8")))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise ProtocolError(f"Malformed reply from service: {exc}") from exc


def uses_unix_socket(settings: ServiceSettings) -> bool:
    return settings.use_unix_socket and hasattr(socket, "AF_UNIX")


class ControlServer:
    """Local control endpoint: one command in, one reply out, then hang up."""

    def __init__(
        self,
        settings: ServiceSettings,
        state_manager: ServiceStateManager,
        supervisor: CaptureSupervisor,
        log,
    ):
        self._settings = settings
        self._state_manager = state_manager
        self._supervisor = supervisor
        self._logger = log
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def address(self):
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    async def start(self) -> None:
        if uses_unix_socket(self._settings):
            path = self._settings.socket_path
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                path.unlink()
            self._server = await asyncio.start_unix_server(self._handle_connection, path=str(path))
            self._logger.info("Control socket listening on %s", path)
        else:
            self._server = await asyncio.start_server(
                self._handle_connection, host=LOOPBACK_HOST, port=self._settings.control_port
            )
            self._logger.info("Control socket listening on %s:%s", LOOPBACK_HOST, self.address[1])

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        if uses_unix_socket(self._settings):
            self._settings.socket_path.unlink(missing_ok=True)
        self._logger.info("Control socket closed")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            command = await self._read_command(reader)
            if command is None:
                response = ServiceResponse(success=False, message=INVALID_COMMAND)
            else:
                response = await self.dispatch(command)
            writer.write(encode_response(response))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            self._logger.warning("Control connection failed: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _read_command(self, reader: asyncio.StreamReader) -> Optional[ServiceCommand]:
        buffer = b""
        while len(buffer) <= MAX_COMMAND_BYTES:
            try:
                chunk = await asyncio.wait_for(reader.read(READ_CHUNK_BYTES), COMMAND_READ_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                break
            if not chunk:
                break
            buffer += chunk
            try:
                value = json.loads(buffer.decode("utf-8"))
            except UnicodeDecodeError:
                # possibly a multi-byte character split across reads
                continue
            except json.JSONDecodeError:
                continue
            try:
                return parse_command(value)
            except ValueError:
                break
        self._logger.warning("Rejected control payload (%s bytes)", len(buffer))
        return None

    async def dispatch(self, command: ServiceCommand) -> ServiceResponse:
        self._logger.info("Control command: %s", command.value)
        if command is ServiceCommand.START:
            return await self._start()
        if command is ServiceCommand.STOP:
            return await self._stop()
        return self._reply(True, "Status query succeeded")

    async def _start(self) -> ServiceResponse:
        try:
            started = await self._state_manager.start_service()
        except StatePersistenceError as exc:
            self._logger.error("Start failed: %s", exc)
            return self._reply(False, f"Failed to start: {exc}")

        if not started:
            if self._supervisor.is_running():
                return self._reply(True, "Service already running")
            await self._supervisor.start()
            return self._reply(True, "Service already running; capture loop restarted")

        try:
            await self._supervisor.start()
        except Exception as exc:
            self._logger.exception("Failed to spawn capture loop")
            try:
                await self._state_manager.stop_service()
            except StatePersistenceError as rollback_exc:
                self._logger.error("Rollback to Stopped failed: %s", rollback_exc)
            return self._reply(False, f"Failed to start capture loop: {exc}")
        return self._reply(True, "Service started")

    async def _stop(self) -> ServiceResponse:
        try:
            stopped = await self._state_manager.stop_service()
        except StatePersistenceError as exc:
            self._logger.error("Stop failed: %s", exc)
            return self._reply(False, f"Failed to stop: {exc}")
        await self._supervisor.stop()
        return self._reply(True, "Service stopped" if stopped else "Service already stopped")

    def _reply(self, success: bool, message: str) -> ServiceResponse:
        return ServiceResponse(success=success, message=message, state=self._state_manager.get_state())


class ServiceController:
    """Client side of the control socket."""

    def __init__(self, settings: ServiceSettings, timeout: Optional[float] = None):
        self._settings = settings
        self._timeout = timeout if timeout is not None else settings.client_timeout_seconds

    async def send_command(self, command: ServiceCommand) -> ServiceResponse:
        try:
            return await asyncio.wait_for(self._exchange(command), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ControlTimeout(f"No reply from service within {self._timeout:.0f}s") from exc

    def send(self, command: ServiceCommand) -> ServiceResponse:
        return asyncio.run(self.send_command(command))

    async def _exchange(self, command: ServiceCommand) -> ServiceResponse:
        try:
            if uses_unix_socket(self._settings):
                reader, writer = await asyncio.open_unix_connection(str(self._settings.socket_path))
            else:
                reader, writer = await asyncio.open_connection(LOOPBACK_HOST, self._settings.control_port)
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise ServiceNotRunning(f"Service is not running: {exc}") from exc

        try:
            writer.write(encode_command(command))
            await writer.drain()
            data = b""
            while len(data) < MAX_REPLY_BYTES:
                chunk = await reader.read(MAX_REPLY_BYTES - len(data))
                if not chunk:
                    break
                data += chunk
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        if not data:
            raise ProtocolError("Service closed the connection without replying")
        return decode_response(data)
