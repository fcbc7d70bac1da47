from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from voxcap import config as config_module
from voxcap.control_server import CONTROL_STATE_KEY, RECORDER_KEY, build_app
from voxcap.recording_session import live_session


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


@pytest.fixture
def server_cfg(fake_ffmpeg: Path, tmp_path: Path) -> dict:
    work = tmp_path / "work"
    work.mkdir()
    cfg = config_module.default_config()
    cfg["encoder"]["path"] = str(fake_ffmpeg)
    cfg["encoder"]["grace_period_seconds"] = 2.0
    cfg["audio"]["max_duration_seconds"] = None
    cfg["silence"]["enabled"] = False
    cfg["paths"]["tmp_dir"] = str(work)
    return cfg


async def _wait_for_state(client: TestClient, wanted: set[str], timeout: float = 15.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        resp = await client.get("/api/status")
        payload = await resp.json()
        if payload["state"] in wanted:
            return payload
        if loop.time() > deadline:
            raise AssertionError(f"state stuck at {payload['state']}")
        await asyncio.sleep(0.1)


@pytest.mark.asyncio
async def test_status_when_idle(server_cfg, linux_profile):
    client, server = await _start_client(build_app(server_cfg, profile=linux_profile))
    try:
        resp = await client.get("/api/status")
        assert resp.status == 200
        payload = await resp.json()
        assert payload["state"] == "idle"
        assert payload["recording"] is False
        assert payload["has_recording"] is False
        assert payload["last_error"] is None

        resp = await client.get("/api/recording/last")
        assert resp.status == 404

        resp = await client.post("/api/recording/stop")
        assert resp.status == 200
        assert (await resp.json())["state"] == "idle"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_record_stop_and_download(server_cfg, linux_profile):
    app = build_app(server_cfg, profile=linux_profile)
    client, server = await _start_client(app)
    try:
        resp = await client.post("/api/recording/start")
        assert resp.status == 200
        payload = await resp.json()
        assert payload["ok"] is True
        assert payload["state"] == "recording"
        assert payload["device"] == "alsa_input.usb-mic.analog-mono"

        resp = await client.post("/api/recording/start")
        assert resp.status == 409
        assert (await resp.json())["error"]["kind"] == "concurrent"

        resp = await client.post("/api/diagnostics/test")
        assert resp.status == 409

        await asyncio.sleep(0.8)
        resp = await client.post("/api/recording/stop")
        assert resp.status == 200

        status = await _wait_for_state(client, {"completed", "failed"})
        assert status["state"] == "completed"
        assert status["has_recording"] is True
        assert status["completed_recordings"] == 1

        resp = await client.get("/api/recording/last")
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "audio/wav"
        assert 'filename="recording.wav"' in resp.headers["Content-Disposition"]
        body = await resp.read()
        assert body[:4] == b"RIFF"
        assert app[CONTROL_STATE_KEY].last_audio == body
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_start_with_overrides_and_bad_payloads(server_cfg, linux_profile):
    client, server = await _start_client(build_app(server_cfg, profile=linux_profile))
    try:
        resp = await client.post(
            "/api/recording/start",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400

        resp = await client.post("/api/recording/start", json=["wav"])
        assert resp.status == 400

        resp = await client.post("/api/recording/start", json={"bitrate": "64k"})
        assert resp.status == 400
        assert "bitrate" in (await resp.json())["error"]

        resp = await client.post(
            "/api/recording/start",
            json={"container_format": "mp3", "max_duration_seconds": 0.6},
        )
        assert resp.status == 200

        status = await _wait_for_state(client, {"completed", "failed"})
        assert status["state"] == "completed"
        resp = await client.get("/api/recording/last")
        assert resp.headers["Content-Type"] == "audio/mpeg"
        assert 'filename="recording.mp3"' in resp.headers["Content-Disposition"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_start_without_encoder_is_unavailable(server_cfg, linux_profile, tmp_path):
    server_cfg["encoder"]["path"] = str(tmp_path / "nowhere" / "ffmpeg")
    client, server = await _start_client(build_app(server_cfg, profile=linux_profile))
    try:
        resp = await client.post("/api/recording/start")
        assert resp.status == 503
        payload = await resp.json()
        assert payload["error"]["kind"] == "device_unavailable"

        status = await (await client.get("/api/status")).json()
        assert status["state"] == "failed"
        assert status["last_error"]["kind"] == "device_unavailable"

        diag = await (await client.get("/api/diagnostics")).json()
        assert diag["ok"] is False
        assert diag["encoder"]["available"] is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_devices_and_diagnostics(server_cfg, linux_profile):
    client, server = await _start_client(build_app(server_cfg, profile=linux_profile))
    try:
        resp = await client.get("/api/devices")
        assert resp.status == 200
        payload = await resp.json()
        assert [d["id"] for d in payload["devices"]] == [
            "alsa_input.usb-mic.analog-mono",
            "alsa_input.pci.analog-stereo",
        ]
        assert payload["selected"]["id"] == "alsa_input.usb-mic.analog-mono"

        resp = await client.get("/api/diagnostics")
        payload = await resp.json()
        assert payload["ok"] is True
        assert payload["encoder"]["version"] == "6.1-fake"
        assert payload["platform"] == "linux"

        resp = await client.post("/api/diagnostics/test", json={"seconds": 0.3})
        assert resp.status == 200
        result = await resp.json()
        assert result["success"] is True
        assert result["file_size"] > 0

        resp = await client.post("/api/diagnostics/test", json={"seconds": 300})
        assert resp.status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_server_cleanup_releases_live_recording(server_cfg, linux_profile):
    app = build_app(server_cfg, profile=linux_profile)
    client, server = await _start_client(app)
    try:
        resp = await client.post("/api/recording/start")
        assert resp.status == 200
        session = app[RECORDER_KEY].session
        assert live_session() is session
    finally:
        await client.close()

    assert session.cleaned
    assert session.process.completed
    assert session.process.returncode is not None
    assert live_session() is None


@pytest.mark.asyncio
async def test_start_overrides_are_typed_and_clamped(server_cfg, linux_profile):
    server_cfg["silence"]["enabled"] = True
    app = build_app(server_cfg, profile=linux_profile)
    client, server = await _start_client(app)
    try:
        resp = await client.post("/api/recording/start", json={"max_duration_seconds": "five"})
        assert resp.status == 400
        assert "max_duration_seconds" in (await resp.json())["error"]
        assert live_session() is None

        resp = await client.post("/api/recording/start", json={"silence_detection_enabled": "maybe"})
        assert resp.status == 400

        resp = await client.post(
            "/api/recording/start",
            json={
                "silence_detection_enabled": "false",
                "silence_threshold_db": 5,
                "max_duration_seconds": "0.6",
            },
        )
        assert resp.status == 200
        session = app[RECORDER_KEY].session
        assert session.options.silence_detection_enabled is False
        assert session.options.silence_threshold_db == 20.0
        assert session.options.max_duration_seconds == 0.6
        assert session.monitor is None

        status = await _wait_for_state(client, {"completed", "failed"})
        assert status["state"] == "completed"
    finally:
        await client.close()
