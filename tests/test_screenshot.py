"""Tests for screenshot capture and envelope persistence."""

import base64
from pathlib import Path

import pytest

from conftest import TEST_SECRET, FakeConnection, build_manager
from electron_pilot.screenshot import ENCRYPTED_SUFFIX, ScreenshotService, envelope_path
from electron_pilot.security.access_control import AccessControl
from electron_pilot.security.encryption import EncryptedScreenshot, ScreenshotEncryptor
from electron_pilot.security.errors import TargetError
from electron_pilot.security.models import Permission


@pytest.fixture
def encryptor() -> ScreenshotEncryptor:
    return ScreenshotEncryptor(TEST_SECRET, iterations=1000)


def make_service(tmp_path: Path, connection: FakeConnection, encryptor=None, **kwargs) -> ScreenshotService:
    access_control = kwargs.pop("access_control", None)
    return ScreenshotService(build_manager(tmp_path, **kwargs), connection, encryptor, access_control)


class TestCapture:
    @pytest.mark.asyncio
    async def test_encrypted_envelope_is_written(self, tmp_path: Path, fake_connection, encryptor):
        service = make_service(tmp_path, fake_connection, encryptor)
        output = tmp_path / "shots" / "one.png"

        outcome = await service.capture(output_path=output)

        assert outcome.success
        assert outcome.encrypted
        assert outcome.saved_path == envelope_path(output.resolve())
        assert outcome.saved_path.name == "one.png" + ENCRYPTED_SUFFIX
        assert not output.exists()
        envelope = EncryptedScreenshot.from_json(outcome.saved_path.read_text())
        assert encryptor.decrypt(envelope) == fake_connection.screenshot
        assert base64.b64decode(outcome.image_base64) == fake_connection.screenshot
        assert "envelope saved to" in outcome.message

    @pytest.mark.asyncio
    async def test_without_output_path_nothing_is_written(self, tmp_path: Path, fake_connection, encryptor):
        service = make_service(tmp_path, fake_connection, encryptor)

        outcome = await service.capture(window_title="Settings")

        assert outcome.success
        assert outcome.saved_path is None
        assert fake_connection.screenshot_calls == ["Settings"]
        assert outcome.message.startswith("Screenshot captured (")

    @pytest.mark.asyncio
    async def test_unsafe_path_is_rejected_before_capture(self, tmp_path: Path, fake_connection, encryptor):
        service = make_service(tmp_path, fake_connection, encryptor)

        outcome = await service.capture(output_path="../escape.png")

        assert not outcome.success
        assert outcome.message.startswith("Invalid output path:")
        assert fake_connection.screenshot_calls == []

    @pytest.mark.asyncio
    async def test_encryption_enabled_without_key(self, tmp_path: Path, fake_connection):
        service = make_service(tmp_path, fake_connection)

        outcome = await service.capture(output_path=tmp_path / "one.png")

        assert not outcome.success
        assert outcome.message == "Screenshot encryption is enabled but no encryption key is configured"
        assert not list(tmp_path.glob("*" + ENCRYPTED_SUFFIX))

    @pytest.mark.asyncio
    async def test_plain_envelope_when_encryption_disabled(self, tmp_path: Path, fake_connection):
        service = make_service(tmp_path, fake_connection, enable_screenshot_encryption=False)

        outcome = await service.capture(output_path=tmp_path / "one.png")

        assert outcome.success
        assert not outcome.encrypted
        envelope = EncryptedScreenshot.from_json(outcome.saved_path.read_text())
        assert base64.b64decode(envelope.encrypted_data) == fake_connection.screenshot

    @pytest.mark.asyncio
    async def test_target_error(self, tmp_path: Path, encryptor):
        service = make_service(tmp_path, FakeConnection(error=TargetError("No window matching title: X")), encryptor)

        outcome = await service.capture(window_title="X")

        assert not outcome.success
        assert outcome.message == "Screenshot failed: No window matching title: X"

    @pytest.mark.asyncio
    async def test_markup_in_window_title_is_blocked(self, tmp_path: Path, fake_connection, encryptor):
        service = make_service(tmp_path, fake_connection, encryptor)

        outcome = await service.capture(window_title="<script>")

        assert not outcome.success
        assert outcome.message.startswith("Screenshot blocked:")
        assert outcome.security.blocked
        assert fake_connection.screenshot_calls == []

    @pytest.mark.asyncio
    async def test_write_failure(self, tmp_path: Path, fake_connection, encryptor):
        blocker = tmp_path / "file"
        blocker.write_text("")
        service = make_service(tmp_path, fake_connection, encryptor)

        outcome = await service.capture(output_path=blocker / "one.png")

        assert not outcome.success
        assert outcome.message.startswith("Failed to save screenshot")

    @pytest.mark.asyncio
    async def test_capture_is_audited(self, tmp_path: Path, fake_connection, encryptor):
        service = make_service(tmp_path, fake_connection, encryptor)

        await service.capture(window_title="Main")
        await service.manager.flush_audit()

        entries = list(service.manager.audit.query(action="screenshot"))
        assert len(entries) == 1
        assert entries[0].command == "screenshot"


class TestAccess:
    @pytest.mark.asyncio
    async def test_permission_required(self, tmp_path: Path, fake_connection, encryptor, fake_clock):
        ac = AccessControl(clock=fake_clock, password_iterations=1000)
        await ac.create_user("reader", "pw", {Permission.READ_LOGS})
        session_id = await ac.authenticate_user("reader", "pw")
        service = make_service(tmp_path, fake_connection, encryptor, access_control=ac)

        outcome = await service.capture(session_id=session_id)

        assert not outcome.success
        assert outcome.message == "Access denied: Permission denied: take_screenshot"
        assert fake_connection.screenshot_calls == []

    @pytest.mark.asyncio
    async def test_permitted_session(self, tmp_path: Path, fake_connection, encryptor, fake_clock):
        ac = AccessControl(clock=fake_clock, password_iterations=1000)
        await ac.create_user("shooter", "pw", {Permission.TAKE_SCREENSHOT})
        session_id = await ac.authenticate_user("shooter", "pw")
        service = make_service(tmp_path, fake_connection, encryptor, access_control=ac)

        outcome = await service.capture(session_id=session_id)

        assert outcome.success
