from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
import pytest

from scan4care.shared import notifier as notif
from scan4care.shared.analyze_contract import AnalysisRequest, UploadedImage
from scan4care.shared.config import ServiceConfig


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = {"ok": True} if payload is None else payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            req = httpx.Request("POST", "https://api.telegram.org/botSECRET/sendMessage")
            resp = httpx.Response(self.status_code, request=req)
            raise httpx.HTTPStatusError("bad status", request=req, response=resp)

    def json(self) -> Any:
        return self._payload


def _install_fake_client(monkeypatch: pytest.MonkeyPatch, behaviour) -> list[dict[str, Any]]:
    posted: list[dict[str, Any]] = []

    class FakeClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url: str, **kwargs: Any):
            posted.append({"url": url, **kwargs})
            return behaviour()

    monkeypatch.setattr(notif.httpx, "AsyncClient", FakeClient)
    return posted


def _image(tmp_path: Path, name: str = "image-abc.jpg") -> UploadedImage:
    path = tmp_path / name
    path.write_bytes(b"\xff\xd8fake-jpeg")
    return UploadedImage(field_name="image", path=path, mime_type="image/jpeg", size_bytes=path.stat().st_size)


def _notifier(**kwargs: Any) -> notif.TelegramNotifier:
    return notif.TelegramNotifier("SECRET", "42", base_url="https://tg.test", **kwargs)


def test_build_request_summary_contains_hints(tmp_path: Path) -> None:
    request = AnalysisRequest(
        problem_image=_image(tmp_path, "a.jpg"),
        selfie_image=_image(tmp_path, "b.jpg"),
        consent=True,
        location_hint="Pune",
        device_hint="Mozilla/5.0",
        user_prompt="What is wrong with this leaf?",
    )

    text = notif.build_request_summary(request)

    assert text.splitlines() == [
        "🛡️ Scan4Care Request",
        "📍 Pune",
        "📱 Mozilla/5.0",
        "📝 What is wrong with this leaf?",
    ]


def test_request_events_order(tmp_path: Path) -> None:
    problem = _image(tmp_path, "a.jpg")
    selfie = _image(tmp_path, "b.jpg")
    request = AnalysisRequest(problem_image=problem, selfie_image=selfie, consent=True)

    events = notif.request_events(request)

    assert [e.kind for e in events] == ["text", "photo", "photo"]
    assert events[1].image is problem and events[1].text == notif.PROBLEM_CAPTION
    assert events[2].image is selfie and events[2].text == notif.SELFIE_CAPTION


def test_notify_text_posts_send_message(monkeypatch: pytest.MonkeyPatch) -> None:
    posted = _install_fake_client(monkeypatch, lambda: _FakeResponse())

    asyncio.run(_notifier().notify_text("hello"))

    assert len(posted) == 1
    assert posted[0]["url"] == "https://tg.test/botSECRET/sendMessage"
    assert posted[0]["json"] == {"chat_id": "42", "text": "hello"}


def test_notify_photo_posts_multipart(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    posted = _install_fake_client(monkeypatch, lambda: _FakeResponse())
    image = _image(tmp_path)

    asyncio.run(_notifier().notify_photo(image, notif.PROBLEM_CAPTION))

    assert posted[0]["url"] == "https://tg.test/botSECRET/sendPhoto"
    assert posted[0]["data"] == {"chat_id": "42", "caption": notif.PROBLEM_CAPTION}
    name, payload, mime = posted[0]["files"]["photo"]
    assert name == "image-abc.jpg"
    assert payload == b"\xff\xd8fake-jpeg"
    assert mime == "image/jpeg"


def test_disabled_notifier_makes_no_calls(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    posted = _install_fake_client(monkeypatch, lambda: _FakeResponse())

    asyncio.run(_notifier(enabled=False).notify_text("hello"))
    asyncio.run(notif.TelegramNotifier("", "42").notify_text("hello"))
    asyncio.run(notif.TelegramNotifier("SECRET", "").notify_photo(_image(tmp_path), "x"))

    assert posted == []


def test_from_config_enables_only_in_notify_env() -> None:
    dev = ServiceConfig(telegram_bot_token="t", telegram_chat_id="c", app_env="development")
    prod = ServiceConfig(telegram_bot_token="t", telegram_chat_id="c", app_env="production")

    assert notif.TelegramNotifier.from_config(dev).enabled is False
    assert notif.TelegramNotifier.from_config(prod).enabled is True


@pytest.mark.parametrize(
    "behaviour",
    [
        lambda: _FakeResponse(500),
        lambda: _FakeResponse(200, {"ok": False, "description": "chat not found"}),
        lambda: (_ for _ in ()).throw(httpx.ConnectError("offline")),
        lambda: (_ for _ in ()).throw(httpx.ReadTimeout("slow")),
    ],
)
def test_failures_are_logged_and_swallowed(monkeypatch: pytest.MonkeyPatch, caplog, tmp_path: Path, behaviour) -> None:
    _install_fake_client(monkeypatch, behaviour)
    caplog.set_level(logging.WARNING, logger=notif.__name__)
    notifier = _notifier()

    asyncio.run(notifier.notify_text("hello"))
    asyncio.run(notifier.notify_photo(_image(tmp_path), notif.SELFIE_CAPTION))

    messages = [r.getMessage() for r in caplog.records]
    assert len(messages) == 2
    assert all("SECRET" not in m for m in messages)


def test_missing_photo_file_is_swallowed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    posted = _install_fake_client(monkeypatch, lambda: _FakeResponse())
    ghost = UploadedImage(field_name="selfie", path=tmp_path / "gone.jpg", mime_type="image/jpeg", size_bytes=0)

    asyncio.run(_notifier().notify_photo(ghost, notif.SELFIE_CAPTION))

    assert posted == []


def test_photo_read_runs_off_the_event_loop(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    posted = _install_fake_client(monkeypatch, lambda: _FakeResponse())
    offloaded: list[str] = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, /, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(notif.asyncio, "to_thread", recording_to_thread)

    asyncio.run(_notifier().notify_photo(_image(tmp_path), notif.PROBLEM_CAPTION))

    assert offloaded == ["read_bytes"]
    assert len(posted) == 1
