from __future__ import annotations

import asyncio
import copy
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from exam_coach.bootstrap import Bootstrapper
from exam_coach.config import API_KEY_ENV_VARS, AppConfig, GenerationSettings
from exam_coach.errors import GenerationError
from exam_coach.models import SpokenEvaluation, StudyMaterial
from exam_coach.services.generation import GeneratedImage


SAMPLE_MATERIAL = {
    "simpleExplanation": "植物用阳光当能量，把水和二氧化碳做成糖，顺便放出氧气。",
    "backgroundContext": "光合作用是生物圈能量流动的起点，是生物学和农学考试的高频考点。",
    "misconceptions": ["植物只在白天呼吸", "光合作用只需要光，不需要酶"],
    "deconstruction": {
        "steps": [
            {"stepNumber": 1, "title": "吸收光能", "content": "叶绿体中的色素吸收光能。", "keyTerm": "光合色素"},
            {"stepNumber": 2, "title": "水的光解", "content": "光能使水分解，释放氧气。", "keyTerm": "光反应"},
            {"stepNumber": 3, "title": "生成能量载体", "content": "光反应产生 ATP 和 NADPH。", "keyTerm": "ATP"},
            {"stepNumber": 4, "title": "固定二氧化碳", "content": "暗反应利用 ATP 把 CO2 合成糖。", "keyTerm": "卡尔文循环"},
        ],
        "synthesis": "光反应提供能量，暗反应利用能量固定碳，两者合起来就是光合作用。",
    },
    "integration": {
        "parentCategory": "植物生理学",
        "conceptTree": ["生物学", "植物生理学", "物质与能量代谢", "光合作用"],
        "prerequisites": [
            {"concept": "细胞结构", "connection": "光合作用发生在叶绿体中"},
            {"concept": "ATP", "connection": "光反应产生的 ATP 驱动暗反应"},
        ],
        "confusingConcepts": [
            {"concept": "细胞呼吸", "similarity": "都涉及能量转换", "difference": "呼吸分解有机物，光合合成有机物"},
            {"concept": "化能合成作用", "similarity": "都能合成有机物", "difference": "能量来源是化学能而非光能"},
        ],
        "comprehensiveCase": "温室增施二氧化碳提高蔬菜产量的原理分析。",
    },
    "definition": "光合作用是绿色植物利用光能，把二氧化碳和水转化成储存能量的有机物，并释放氧气的过程。",
    "coreTheory": ["场所：叶绿体", "条件：光能、色素和酶", "产物：有机物和氧气"],
    "analogy": "叶绿体像一座太阳能工厂，阳光是电，水和二氧化碳是原料，糖是产品。",
    "mnemonic": "光水二氧化碳，叶绿体里造糖，氧气随手放。",
    "keywords": ["叶绿体", "光能", "有机物", "氧气"],
    "memoryPalace": "你走进一间洒满阳光的绿色工厂，传送带上的水滴裂开冒出氧气泡泡。",
    "flashcards": [
        {"question": "光合作用的场所是什么？", "answer": "叶绿体"},
        {"question": "光反应为暗反应提供什么？", "answer": "ATP 和 NADPH"},
    ],
    "fillInTheBlanks": [
        {"context": "光合作用的场所是_____。", "answer": "叶绿体"},
        {"context": "光反应中水被分解并释放_____。", "answer": "氧气"},
    ],
}

SAMPLE_EVALUATION = {
    "score": 82,
    "feedback": "核心逻辑讲清楚了，但遗漏了光合作用的条件。",
    "missingPoints": ["需要叶绿素和酶"],
    "betterExplanation": "绿色植物在叶绿体中利用光能，把二氧化碳和水变成有机物并放出氧气。",
}


@pytest.fixture()
def material_payload() -> dict:
    return copy.deepcopy(SAMPLE_MATERIAL)


@pytest.fixture()
def evaluation_payload() -> dict:
    return copy.deepcopy(SAMPLE_EVALUATION)


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    for variable in API_KEY_ENV_VARS:
        monkeypatch.delenv(variable, raising=False)

    mapping = {
        "storage_root": "storage",
        "media_root": "storage/media",
        "generation": {"video_poll_interval": 0.0, "video_timeout": 5.0},
    }
    config = AppConfig.from_mapping(
        mapping,
        base_path=tmp_path,
        environ={"GEMINI_API_KEY": "test-key"},
    )

    Bootstrapper(config).initialize()
    return config


def text_response(text: Any) -> SimpleNamespace:
    return SimpleNamespace(text=text, candidates=[])


def inline_response(data: Any, mime_type: str) -> SimpleNamespace:
    part = SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    candidate = SimpleNamespace(content=SimpleNamespace(parts=[part]))
    return SimpleNamespace(text=None, candidates=[candidate])


def _next(queue: List[Any]) -> Any:
    item = queue.pop(0)
    if isinstance(item, BaseException):
        raise item
    return item


class FakeModels:
    """Stands in for ``client.aio.models``; queued items are returned or raised in order."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.responses: List[Any] = []
        self.video_operations: List[Any] = []

    async def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return _next(self.responses)

    async def generate_videos(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return _next(self.video_operations)


class FakeOperations:
    def __init__(self) -> None:
        self.polled: List[Any] = []
        self.results: List[Any] = []

    async def get(self, operation: Any) -> Any:
        self.polled.append(operation)
        return _next(self.results)


@pytest.fixture()
def fake_client() -> SimpleNamespace:
    return SimpleNamespace(aio=SimpleNamespace(models=FakeModels(), operations=FakeOperations()))


class FakeStream:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeMicrophone:
    """Audio source whose chunks are pushed manually by the test."""

    def __init__(self, *, sample_rate: int = 16_000, channels: int = 1, error: Exception | None = None) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.error = error
        self.open_count = 0
        self.streams: List[FakeStream] = []
        self._on_chunk = None

    def open(self, on_chunk):
        if self.error is not None:
            raise self.error
        self.open_count += 1
        self._on_chunk = on_chunk
        stream = FakeStream()
        self.streams.append(stream)
        return stream

    def push(self, chunk: bytes) -> None:
        assert self._on_chunk is not None
        self._on_chunk(chunk)


@pytest.fixture()
def microphone() -> FakeMicrophone:
    return FakeMicrophone()


class FakeClip:
    def __init__(self, buffer) -> None:
        self.buffer = buffer
        self.active = True
        self.stopped = False

    def is_active(self) -> bool:
        return self.active

    def stop(self) -> None:
        self.stopped = True
        self.active = False


class FakeOutputDevice:
    def __init__(self, settings) -> None:
        self.settings = settings
        self.suspended = False
        self.resumed = 0
        self.closed = False
        self.clips: List[FakeClip] = []

    def resume(self) -> None:
        self.suspended = False
        self.resumed += 1

    def suspend(self) -> None:
        self.suspended = True

    def start(self, buffer) -> FakeClip:
        clip = FakeClip(buffer)
        self.clips.append(clip)
        return clip

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def device_factory():
    created: List[FakeOutputDevice] = []

    def _factory(settings) -> FakeOutputDevice:
        device = FakeOutputDevice(settings)
        created.append(device)
        return device

    _factory.created = created  # type: ignore[attr-defined]
    return _factory


class FakeGateway:
    """Scripted gateway; an operation listed in ``gates`` waits for its event."""

    def __init__(self) -> None:
        self.settings = GenerationSettings(api_key="test-key")
        self.calls: Dict[str, int] = {}
        self.topics: List[str] = []
        self.failures: Dict[str, GenerationError] = {}
        self.gates: Dict[str, asyncio.Event] = {}

    async def _enter(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    async def request_study_material(self, topic: str) -> StudyMaterial:
        self.topics.append(topic)
        await self._enter("study_material")
        return StudyMaterial.model_validate(SAMPLE_MATERIAL)

    async def request_speech(self, text: str) -> bytes:
        await self._enter("speech")
        return b"\x00\x10" * 240

    async def request_image(self, scene_prompt: str) -> GeneratedImage:
        await self._enter("image")
        return GeneratedImage(data=b"png-bytes", mime_type="image/png")

    async def request_video(self, scene_prompt: str, *, destination: Path, on_status=None) -> Path:
        await self._enter("video")
        if on_status is not None:
            on_status("正在下载视频…")
        destination.write_bytes(b"mp4-bytes")
        return destination

    async def request_evaluation(self, reference_definition: str, audio: bytes, mime_type: str) -> SpokenEvaluation:
        await self._enter("evaluation")
        return SpokenEvaluation.model_validate(SAMPLE_EVALUATION)


