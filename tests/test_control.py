"""Tests for the control socket, the client and the capture-loop supervisor."""

import asyncio
from dataclasses import replace

import pytest

from screendiary.control import (
    INVALID_COMMAND,
    ControlServer,
    ControlTimeout,
    ProtocolError,
    ServiceController,
    ServiceNotRunning,
    decode_response,
    encode_command,
)
from screendiary.models import ServiceCommand, ServiceStatus
from screendiary.service_state import ServiceStateManager
from screendiary.supervisor import CaptureSupervisor


class IdleLoop:
    """Loop factory whose tasks park until cancelled."""

    def __init__(self):
        self.spawned = 0

    def __call__(self):
        self.spawned += 1
        return asyncio.Event().wait()


@pytest.fixture
def idle_loop():
    return IdleLoop()


def make_parts(settings, log, clock, loop_factory):
    manager = ServiceStateManager(settings.service.state_path, "fp", log, clock=clock)
    supervisor = CaptureSupervisor(loop_factory, log)
    server = ControlServer(settings.service, manager, supervisor, log)
    return manager, supervisor, server


async def raw_exchange(settings, payload, eof=False):
    reader, writer = await asyncio.open_unix_connection(str(settings.service.socket_path))
    writer.write(payload)
    if eof:
        writer.write_eof()
    await writer.drain()
    data = await reader.read()
    writer.close()
    await writer.wait_closed()
    return decode_response(data)


class TestCommandRoundTrip:
    def test_start_status_stop(self, settings, log, clock, idle_loop):
        manager, supervisor, server = make_parts(settings, log, clock, idle_loop)
        client = ServiceController(settings.service, timeout=5)

        async def scenario():
            await server.start()
            try:
                started = await client.send_command(ServiceCommand.START)
                status = await client.send_command(ServiceCommand.STATUS)
                again = await client.send_command(ServiceCommand.START)
                running = supervisor.is_running()
                stopped = await client.send_command(ServiceCommand.STOP)
                stopped_again = await client.send_command(ServiceCommand.STOP)
            finally:
                await server.close()
            return started, status, again, running, stopped, stopped_again

        started, status, again, running, stopped, stopped_again = asyncio.run(scenario())

        assert started.success and started.message == "Service started"
        assert started.state.status is ServiceStatus.RUNNING
        assert status.success and status.message == "Status query succeeded"
        assert status.state.total_captures == 0
        assert again.success and again.message == "Service already running"
        assert running is True
        assert stopped.success and stopped.message == "Service stopped"
        assert stopped.state.status is ServiceStatus.STOPPED
        assert stopped_again.message == "Service already stopped"
        assert supervisor.task is None
        assert idle_loop.spawned == 1
        assert not settings.service.socket_path.exists()

    def test_status_carries_persisted_state(self, settings, log, clock, idle_loop):
        manager, _, server = make_parts(settings, log, clock, idle_loop)
        client = ServiceController(settings.service, timeout=5)

        async def scenario():
            await manager.increment_capture_count()
            await manager.increment_capture_count()
            await server.start()
            try:
                return await client.send_command(ServiceCommand.STATUS)
            finally:
                await server.close()

        reply = asyncio.run(scenario())
        assert reply.state.total_captures == 2
        assert reply.state.status is ServiceStatus.STOPPED
        assert reply.state.config_fingerprint == "fp"

    def test_stale_socket_file_is_replaced(self, settings, log, clock, idle_loop):
        settings.service.socket_path.write_text("stale", encoding="utf-8")
        _, _, server = make_parts(settings, log, clock, idle_loop)
        client = ServiceController(settings.service, timeout=5)

        async def scenario():
            await server.start()
            try:
                return await client.send_command(ServiceCommand.STATUS)
            finally:
                await server.close()

        assert asyncio.run(scenario()).success is True

    def test_tcp_loopback_fallback(self, settings, log, clock, idle_loop, monkeypatch):
        monkeypatch.setattr("screendiary.control.uses_unix_socket", lambda service_settings: False)
        service_settings = replace(settings.service, control_port=0)
        manager = ServiceStateManager(service_settings.state_path, "fp", log, clock=clock)
        server = ControlServer(service_settings, manager, CaptureSupervisor(idle_loop, log), log)

        async def scenario():
            await server.start()
            try:
                port = server.address[1]
                client = ServiceController(replace(service_settings, control_port=port), timeout=5)
                return await client.send_command(ServiceCommand.STATUS)
            finally:
                await server.close()

        assert asyncio.run(scenario()).message == "Status query succeeded"


class TestInvalidCommands:
    def test_unknown_command_is_rejected(self, settings, log, clock, idle_loop):
        manager, _, server = make_parts(settings, log, clock, idle_loop)
        client = ServiceController(settings.service, timeout=5)

        async def scenario():
            await server.start()
            try:
                rejected = await raw_exchange(settings, b'"Launch"')
                garbage = await raw_exchange(settings, b"{not json", eof=True)
                follow_up = await client.send_command(ServiceCommand.STATUS)
            finally:
                await server.close()
            return rejected, garbage, follow_up

        rejected, garbage, follow_up = asyncio.run(scenario())
        assert rejected.success is False and rejected.message == INVALID_COMMAND
        assert garbage.success is False and garbage.message == INVALID_COMMAND
        assert follow_up.success is True
        assert manager.get_state().status is ServiceStatus.STOPPED

    def test_non_string_json_is_rejected(self, settings, log, clock, idle_loop):
        _, _, server = make_parts(settings, log, clock, idle_loop)

        async def scenario():
            await server.start()
            try:
                return await raw_exchange(settings, b'{"command": "Start"}')
            finally:
                await server.close()

        assert asyncio.run(scenario()).message == INVALID_COMMAND

    def test_command_split_across_writes(self, settings, log, clock, idle_loop):
        _, _, server = make_parts(settings, log, clock, idle_loop)

        async def scenario():
            await server.start()
            try:
                reader, writer = await asyncio.open_unix_connection(str(settings.service.socket_path))
                writer.write(b'"Sta')
                await writer.drain()
                await asyncio.sleep(0.05)
                writer.write(b'tus"')
                await writer.drain()
                data = await reader.read()
                writer.close()
                await writer.wait_closed()
                return decode_response(data)
            finally:
                await server.close()

        assert asyncio.run(scenario()).message == "Status query succeeded"


class TestClientErrors:
    def test_missing_socket_means_not_running(self, settings):
        client = ServiceController(settings.service, timeout=1)
        with pytest.raises(ServiceNotRunning):
            client.send(ServiceCommand.STATUS)

    def test_silent_service_times_out(self, settings):
        async def scenario():
            gate = asyncio.Event()

            async def never_reply(reader, writer):
                await gate.wait()
                writer.close()

            server = await asyncio.start_unix_server(never_reply, path=str(settings.service.socket_path))
            try:
                await ServiceController(settings.service, timeout=0.2).send_command(ServiceCommand.STATUS)
            finally:
                gate.set()
                server.close()
                await server.wait_closed()

        with pytest.raises(ControlTimeout):
            asyncio.run(scenario())

    def test_hang_up_without_reply_is_protocol_error(self, settings):
        async def scenario():
            async def hang_up(reader, writer):
                await reader.read(64)
                writer.close()

            server = await asyncio.start_unix_server(hang_up, path=str(settings.service.socket_path))
            try:
                await ServiceController(settings.service, timeout=2).send_command(ServiceCommand.STATUS)
            finally:
                server.close()
                await server.wait_closed()

        with pytest.raises(ProtocolError):
            asyncio.run(scenario())

    def test_command_encoding(self):
        assert encode_command(ServiceCommand.START) == b'"Start"'


class TestCrashRecovery:
    def test_start_respawns_missing_loop(self, settings, log, clock, idle_loop):
        manager, supervisor, server = make_parts(settings, log, clock, idle_loop)

        async def scenario():
            await manager.start_service()
            reply = await server.dispatch(ServiceCommand.START)
            running = supervisor.is_running()
            await supervisor.stop()
            return reply, running

        reply, running = asyncio.run(scenario())
        assert reply.success is True
        assert reply.message == "Service already running; capture loop restarted"
        assert running is True
        assert idle_loop.spawned == 1

    def test_start_after_loop_crash(self, settings, log, clock):
        crashes = []

        async def crashing_loop():
            crashes.append(1)
            raise RuntimeError("loop died")

        manager, supervisor, server = make_parts(settings, log, clock, crashing_loop)

        async def scenario():
            first = await server.dispatch(ServiceCommand.START)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            crashed = not supervisor.is_running()
            second = await server.dispatch(ServiceCommand.START)
            await supervisor.stop()
            return first, crashed, second

        first, crashed, second = asyncio.run(scenario())
        assert first.message == "Service started"
        assert crashed is True
        assert second.message == "Service already running; capture loop restarted"
        assert manager.get_state().status is ServiceStatus.RUNNING

    def test_failed_spawn_rolls_back_to_stopped(self, settings, log, clock, idle_loop):
        manager, supervisor, server = make_parts(settings, log, clock, idle_loop)

        async def broken_start():
            raise RuntimeError("no event loop capacity")

        supervisor.start = broken_start
        reply = asyncio.run(server.dispatch(ServiceCommand.START))

        assert reply.success is False
        assert "no event loop capacity" in reply.message
        assert manager.get_state().status is ServiceStatus.STOPPED


class TestSupervisor:
    def test_restart_cancels_previous_task(self, log, idle_loop):
        supervisor = CaptureSupervisor(idle_loop, log)

        async def scenario():
            await supervisor.start()
            first = supervisor.task
            await supervisor.start()
            second = supervisor.task
            await asyncio.sleep(0)
            cancelled = first.cancelled()
            await supervisor.stop()
            await asyncio.sleep(0)
            return first, second, cancelled

        first, second, cancelled = asyncio.run(scenario())
        assert first is not second
        assert cancelled is True
        assert second.cancelled() is True
        assert supervisor.task is None
        assert supervisor.is_running() is False

    def test_stop_without_task_is_noop(self, log, idle_loop):
        supervisor = CaptureSupervisor(idle_loop, log)
        asyncio.run(supervisor.stop())
        assert idle_loop.spawned == 0
