from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import pytest

from exam_coach.config import PlaybackSettings
from exam_coach.errors import CaptureError, ErrorKind, GenerationError
from exam_coach.processing.capture import CaptureState, RecordingController
from exam_coach.processing.playback import AudioOutput
from exam_coach.services.session import NoActiveMaterialError, StudySession
from exam_coach.services.views import TabKind

from conftest import FakeGateway, FakeMicrophone


def _session(tmp_path: Path, device_factory, microphone: Optional[FakeMicrophone] = None):
    gateway = FakeGateway()
    microphone = microphone or FakeMicrophone()
    session = StudySession(
        gateway,  # type: ignore[arg-type]
        recorder=RecordingController(microphone),
        audio_output=AudioOutput(PlaybackSettings(), device_factory=device_factory),
        media_root=tmp_path,
    )
    return session, gateway, microphone


def _loaded(tmp_path: Path, device_factory, microphone: Optional[FakeMicrophone] = None):
    session, gateway, microphone = _session(tmp_path, device_factory, microphone)
    asyncio.run(session.submit("光合作用"))
    return session, gateway, microphone


def test_submit_stores_material_and_resets_views(tmp_path, device_factory) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)

    material = asyncio.run(session.submit("  光合作用  "))

    assert material is not None
    assert gateway.topics == ["光合作用"]
    assert session.material == material
    assert session.loading is False
    assert session.error is None
    snapshot = session.snapshot()
    assert snapshot["topic"] == "光合作用"
    assert snapshot["views"]["breakdown"]["stepCount"] == 4
    json.dumps(snapshot, ensure_ascii=False)


@pytest.mark.parametrize("topic", ["", "   \n"])
def test_submit_rejects_blank_topics(tmp_path, device_factory, topic: str) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)

    with pytest.raises(ValueError):
        asyncio.run(session.submit(topic))

    assert gateway.calls == {}


def test_failed_submit_reports_error_and_clears_loading(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)
    gateway.failures["study_material"] = GenerationError(ErrorKind.MALFORMED_RESPONSE, "bad json")

    result = asyncio.run(session.submit("细胞呼吸"))

    assert result is None
    assert session.material is None
    assert session.loading is False
    assert session.error == "AI 返回的内容格式不正确，请重新提交。"

    session.dismiss_error()
    assert session.error is None


def test_loading_flag_is_set_while_request_is_in_flight(tmp_path, device_factory) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)

    async def scenario() -> None:
        gateway.gates["study_material"] = asyncio.Event()
        task = asyncio.create_task(session.submit("光合作用"))
        await asyncio.sleep(0)
        assert session.loading is True
        assert session.snapshot()["topic"] == "光合作用"
        gateway.gates["study_material"].set()
        await task

    asyncio.run(scenario())
    assert session.loading is False


def test_image_generation_is_idempotent(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)

    first = asyncio.run(session.generate_image())
    second = asyncio.run(session.generate_image())

    assert first is second
    assert gateway.calls["image"] == 1
    assert session.snapshot()["image"]["url"].startswith("/api/image?v=")


def test_concurrent_image_triggers_issue_one_call(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)

    async def scenario() -> None:
        gateway.gates["image"] = asyncio.Event()
        task = asyncio.create_task(session.generate_image())
        await asyncio.sleep(0)
        assert await session.generate_image() is None
        gateway.gates["image"].set()
        await task

    asyncio.run(scenario())
    assert gateway.calls["image"] == 1
    assert session.image is not None


def test_video_generation_is_idempotent(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)

    video = asyncio.run(session.generate_video())
    again = asyncio.run(session.generate_video())

    assert video is again
    assert gateway.calls["video"] == 1
    assert video.path.read_bytes() == b"mp4-bytes"
    assert video.url == f"/media/{video.path.name}"
    assert session.snapshot()["video"]["status"] == ""


def test_media_generation_requires_material(tmp_path, device_factory) -> None:
    session, _, _ = _session(tmp_path, device_factory)

    with pytest.raises(NoActiveMaterialError):
        asyncio.run(session.generate_image())


def test_failed_image_keeps_material_and_reports_error(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)
    gateway.failures["image"] = GenerationError(ErrorKind.NO_IMAGE_RETURNED)

    assert asyncio.run(session.generate_image()) is None

    assert session.material is not None
    assert session.error == "图片生成失败：没有返回图片数据。"
    assert session.snapshot()["image"]["loading"] is False


def test_stale_image_is_discarded_after_new_submission(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)

    async def scenario() -> None:
        gateway.gates["image"] = asyncio.Event()
        task = asyncio.create_task(session.generate_image())
        await asyncio.sleep(0)
        await session.submit("细胞呼吸")
        gateway.gates["image"].set()
        assert await task is None

    asyncio.run(scenario())
    assert session.material is not None
    assert session.image is None
    assert session.snapshot()["image"]["available"] is False


def test_stale_video_is_discarded_and_removed(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)

    async def scenario() -> None:
        gateway.gates["video"] = asyncio.Event()
        task = asyncio.create_task(session.generate_video())
        await asyncio.sleep(0)
        await session.submit("细胞呼吸")
        gateway.gates["video"].set()
        assert await task is None

    asyncio.run(scenario())
    assert session.video is None
    assert list(tmp_path.glob("*.mp4")) == []


def test_new_submission_removes_previous_video(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)
    video = asyncio.run(session.generate_video())

    asyncio.run(session.submit("细胞呼吸"))

    assert not video.path.exists()
    assert session.video is None


def test_play_speech_uses_shared_output(tmp_path, device_factory) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)

    assert asyncio.run(session.play_speech("光合作用", "definition")) is True

    device = device_factory.created[0]
    assert device.clips[0].buffer.frame_count == 240
    assert session.speech_busy is None


def test_play_speech_ignores_requests_while_busy(tmp_path, device_factory) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)

    async def scenario() -> None:
        gateway.gates["speech"] = asyncio.Event()
        task = asyncio.create_task(session.play_speech("定义", "definition"))
        await asyncio.sleep(0)
        assert session.speech_busy == "definition"
        assert await session.play_speech("口诀", "mnemonic") is False
        gateway.gates["speech"].set()
        assert await task is True

    asyncio.run(scenario())
    assert gateway.calls["speech"] == 1
    assert session.speech_busy is None


def test_speech_failure_clears_busy_flag(tmp_path, device_factory) -> None:
    session, gateway, _ = _session(tmp_path, device_factory)
    gateway.failures["speech"] = GenerationError(ErrorKind.NO_AUDIO_RETURNED)

    assert asyncio.run(session.play_speech("光合作用", "definition")) is False

    assert session.speech_busy is None
    assert session.error == "语音生成失败：没有返回音频数据。"


def test_new_topic_silences_previous_speech(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)
    asyncio.run(session.play_speech("光合作用", "definition"))
    device = device_factory.created[0]

    asyncio.run(session.submit("细胞呼吸"))

    assert device.clips[0].stopped
    assert device.suspended
    assert asyncio.run(session.play_speech("细胞呼吸", "definition")) is True
    assert not device.suspended


def test_speech_wav_returns_playable_bytes(tmp_path, device_factory) -> None:
    session, _, _ = _session(tmp_path, device_factory)

    audio = asyncio.run(session.speech_wav("光合作用"))

    assert audio is not None
    assert audio.startswith(b"RIFF")


def test_recording_round_trip_produces_evaluation(tmp_path, device_factory) -> None:
    session, gateway, microphone = _loaded(tmp_path, device_factory)

    assert session.start_recording() is True
    microphone.push(b"\x01\x00" * 100)
    assert session.stop_recording() is True
    evaluation = asyncio.run(session.submit_recording())

    assert evaluation is not None
    assert evaluation.score == 82
    assert session.recorder.state is CaptureState.IDLE
    assert session.snapshot()["evaluation"]["missingPoints"] == ["需要叶绿素和酶"]


def test_failed_evaluation_still_returns_recorder_to_idle(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)
    gateway.failures["evaluation"] = GenerationError(ErrorKind.PROVIDER_UNAVAILABLE, "quota")
    session.upload_recording(b"webm-bytes", "audio/webm")

    assert asyncio.run(session.submit_recording()) is None

    assert session.recorder.state is CaptureState.IDLE
    assert session.error == "AI 服务暂时不可用，请稍后重试。"


def test_starting_a_new_recording_clears_previous_evaluation(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)
    session.upload_recording(b"webm-bytes", "audio/webm")
    asyncio.run(session.submit_recording())
    assert session.evaluation is not None

    session.start_recording()

    assert session.evaluation is None


def test_stale_evaluation_is_discarded(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)
    session.upload_recording(b"webm-bytes", "audio/webm")

    async def scenario() -> None:
        gateway.gates["evaluation"] = asyncio.Event()
        task = asyncio.create_task(session.submit_recording())
        await asyncio.sleep(0)
        await session.submit("细胞呼吸")
        gateway.gates["evaluation"].set()
        assert await task is None

    asyncio.run(scenario())
    assert session.evaluation is None
    assert session.recorder.state is CaptureState.IDLE


def test_reset_and_restart_during_evaluation_keeps_new_recording(tmp_path, device_factory) -> None:
    session, gateway, microphone = _loaded(tmp_path, device_factory)
    session.upload_recording(b"webm-bytes", "audio/webm")

    async def scenario() -> None:
        gateway.gates["evaluation"] = asyncio.Event()
        task = asyncio.create_task(session.submit_recording())
        await asyncio.sleep(0)
        session.reset_recording()
        assert session.start_recording() is True
        gateway.gates["evaluation"].set()
        assert await task is None

    asyncio.run(scenario())
    assert session.evaluation is None
    assert session.recorder.state is CaptureState.RECORDING
    assert session.stop_recording() is True
    assert microphone.streams[-1].closed


def test_upload_during_evaluation_is_not_scored_with_old_result(tmp_path, device_factory) -> None:
    session, gateway, _ = _loaded(tmp_path, device_factory)
    session.upload_recording(b"first-take", "audio/webm")

    async def scenario() -> None:
        gateway.gates["evaluation"] = asyncio.Event()
        task = asyncio.create_task(session.submit_recording())
        await asyncio.sleep(0)
        session.reset_recording()
        session.upload_recording(b"second-take", "audio/webm")
        gateway.gates["evaluation"].set()
        assert await task is None

    asyncio.run(scenario())
    assert session.evaluation is None
    assert session.recorder.state is CaptureState.STOPPED
    assert session.recorder.recording.data == b"second-take"


def test_microphone_denial_is_reported(tmp_path, device_factory) -> None:
    microphone = FakeMicrophone(error=PermissionError("denied"))
    session, _, _ = _loaded(tmp_path, device_factory, microphone)

    assert session.start_recording() is False
    assert session.error == "无法访问麦克风，请检查权限设置后重试。"


def test_submitting_without_recording_is_invalid(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    with pytest.raises(CaptureError) as excinfo:
        asyncio.run(session.submit_recording())

    assert excinfo.value.kind is ErrorKind.INVALID_STATE


def test_step_selection_is_clamped_to_synthesis(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    assert session.select_step(2) == 2
    assert session.select_step(99) == 4
    assert session.view(TabKind.BREAKDOWN).showing_synthesis
    assert session.select_step(-3) == 0


def test_tab_selection_validates_names(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    assert session.select_tab("quiz") is TabKind.QUIZ
    with pytest.raises(ValueError):
        session.select_tab("settings")


def test_blank_check_uses_trimmed_exact_match(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    session.answer_blank(0, "  叶绿体 ")
    session.answer_blank(1, "氧")

    assert session.check_blank(0).correct is True
    result = session.check_blank(1)
    assert result.correct is False
    assert result.answer == "氧气"

    session.answer_blank(1, "氧气")
    assert session.check_blank(1).correct is False
    assert session.snapshot()["views"]["quiz"]["revealed"]["0"] == {"answer": "叶绿体", "correct": True}


def test_unknown_blank_index_is_rejected(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    with pytest.raises(IndexError):
        session.check_blank(5)


def test_flip_card_toggles_single_open_card(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    assert session.flip_card(0) == 0
    assert session.flip_card(1) == 1
    assert session.flip_card(1) is None
    with pytest.raises(IndexError):
        session.flip_card(2)


def test_quiz_mode_accepts_known_modes(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)

    assert session.set_quiz_mode("cards") == "cards"
    with pytest.raises(ValueError):
        session.set_quiz_mode("essay")


def test_new_submission_resets_view_state(tmp_path, device_factory) -> None:
    session, _, _ = _loaded(tmp_path, device_factory)
    session.select_tab("quiz")
    session.flip_card(0)
    session.select_step(3)

    asyncio.run(session.submit("细胞呼吸"))

    snapshot = session.snapshot()
    assert snapshot["activeTab"] == "theory"
    assert snapshot["views"]["quiz"]["activeCard"] is None
    assert snapshot["views"]["breakdown"]["activeStep"] == 0
