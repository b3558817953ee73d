"""Structured payloads exchanged with the generation provider."""

from __future__ import annotations

from typing import Any, Dict, List, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


BLANK_PLACEHOLDER = "_____"

_PROVIDER_SCHEMA_DROPPED_KEYS = ("title", "additionalProperties")


class StrictModel(BaseModel):
    """Base model: camelCase on the wire, unknown fields rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class MicroStep(StrictModel):
    step_number: int = Field(description="步骤序号，从 1 开始")
    title: str = Field(min_length=1, description="这个微步骤的小标题")
    content: str = Field(min_length=1, description="这个微步骤的知识点解释，短小精悍")
    key_term: str = Field(min_length=1, description="这个步骤涉及的子术语")


class Deconstruction(StrictModel):
    steps: List[MicroStep] = Field(
        min_length=1, description="将理论拆解为 4-6 个逻辑递进的学习步骤"
    )
    synthesis: str = Field(min_length=1, description="如何把上述步骤重新组合成完整理论")


class Prerequisite(StrictModel):
    concept: str = Field(min_length=1, description="学习当前知识前需要掌握的旧知识")
    connection: str = Field(min_length=1, description="旧知识与当前理论的联系")


class ConceptComparison(StrictModel):
    concept: str = Field(min_length=1, description="容易混淆的相似概念")
    similarity: str = Field(min_length=1, description="为什么容易混淆")
    difference: str = Field(min_length=1, description="核心区别")


class Integration(StrictModel):
    parent_category: str = Field(min_length=1, description="所属的上位学科或大类")
    concept_tree: List[str] = Field(min_length=1, description="从宏观到微观的概念层级路径")
    prerequisites: List[Prerequisite] = Field(min_length=1, description="前置知识点")
    confusing_concepts: List[ConceptComparison] = Field(
        min_length=1, description="容易混淆的相关概念对比"
    )
    comprehensive_case: str = Field(min_length=1, description="需要综合运用的实务案例")


class Flashcard(StrictModel):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)


class FillInBlank(StrictModel):
    context: str = Field(
        min_length=1, description=f"关键句子，核心关键词用 '{BLANK_PLACEHOLDER}' 代替"
    )
    answer: str = Field(min_length=1, description="被挖去的关键词")

    @field_validator("context")
    @classmethod
    def _single_placeholder(cls, value: str) -> str:
        if value.count(BLANK_PLACEHOLDER) != 1:
            raise ValueError(f"context must contain exactly one {BLANK_PLACEHOLDER!r} placeholder")
        return value

    def segments(self) -> List[str]:
        """Return the text before and after the placeholder."""

        return self.context.split(BLANK_PLACEHOLDER, 1)


class StudyMaterial(StrictModel):
    """The full study package generated for one topic."""

    simple_explanation: str = Field(min_length=1, description="面向零基础初学者的大白话解释")
    background_context: str = Field(min_length=1, description="该理论诞生的背景与应用场景")
    misconceptions: List[str] = Field(min_length=1, description="初学者常见的 2-3 个误解")
    deconstruction: Deconstruction
    integration: Integration
    definition: str = Field(min_length=1, description="标准的考试名词解释答案")
    core_theory: List[str] = Field(min_length=1, description="3-5 个核心要点")
    analogy: str = Field(min_length=1, description="生活化的类比")
    mnemonic: str = Field(min_length=1, description="包含核心关键词的中文助记口诀")
    keywords: List[str] = Field(min_length=1, description="3-5 个核心采分词")
    memory_palace: str = Field(min_length=1, description="适合记忆宫殿的生动视觉场景描述")
    flashcards: List[Flashcard] = Field(min_length=1, description="5 个模拟真题")
    fill_in_the_blanks: List[FillInBlank] = Field(min_length=1, description="5 个填空自测题")

    @field_validator("keywords")
    @classmethod
    def _unique_keywords(cls, value: List[str]) -> List[str]:
        seen = set()
        unique: List[str] = []
        for keyword in value:
            cleaned = keyword.strip()
            if not cleaned:
                raise ValueError("keywords must not be blank")
            if cleaned in seen:
                continue
            seen.add(cleaned)
            unique.append(cleaned)
        return unique


class SpokenEvaluation(StrictModel):
    """Scored feedback on a spoken paraphrase of a definition."""

    score: int = Field(ge=0, le=100, description="0-100 的评分")
    feedback: str = Field(min_length=1, description="详细的中文反馈")
    missing_points: List[str] = Field(description="遗漏的关键采分点")
    better_explanation: str = Field(min_length=1, description="用户应该怎样说的简明版本")


def _strip_schema_keys(node: Any, *, names: bool = False) -> Any:
    # ``names`` marks mappings keyed by property or definition names, whose
    # keys are data rather than schema keywords.
    if isinstance(node, dict):
        stripped: Dict[str, Any] = {}
        for key, value in node.items():
            if not names and key in _PROVIDER_SCHEMA_DROPPED_KEYS:
                continue
            stripped[key] = _strip_schema_keys(
                value, names=(not names and key in {"properties", "$defs"})
            )
        return stripped
    if isinstance(node, list):
        return [_strip_schema_keys(item) for item in node]
    return node


def _inline_refs(node: Any, definitions: Dict[str, Any]) -> Any:
    if isinstance(node, dict):
        reference = node.get("$ref")
        if isinstance(reference, str) and reference.startswith("#/$defs/"):
            resolved = dict(_inline_refs(definitions[reference.rsplit("/", 1)[-1]], definitions))
            for key, value in node.items():
                if key != "$ref":
                    resolved[key] = _inline_refs(value, definitions)
            return resolved
        return {key: _inline_refs(value, definitions) for key, value in node.items()}
    if isinstance(node, list):
        return [_inline_refs(item, definitions) for item in node]
    return node


def response_schema_for(model: Type[BaseModel]) -> Dict[str, Any]:
    """Return the provider output schema derived from *model*.

    Property names use the wire aliases and nested models are inlined.
    Titles and ``additionalProperties`` are removed because the provider
    schema dialect does not accept them; unknown fields are still rejected
    when the response is validated.
    """

    schema = model.model_json_schema(by_alias=True)
    definitions = schema.pop("$defs", {})
    return _strip_schema_keys(_inline_refs(schema, definitions))


__all__ = [
    "BLANK_PLACEHOLDER",
    "ConceptComparison",
    "Deconstruction",
    "FillInBlank",
    "Flashcard",
    "Integration",
    "MicroStep",
    "Prerequisite",
    "SpokenEvaluation",
    "StudyMaterial",
    "response_schema_for",
]
