from __future__ import annotations

STUDY_MATERIAL_TEMPLATE = """你是一位经验丰富的考研、考证辅导老师，也是一位知识架构师。
请把下面的考点整理成备考资料，全部内容使用中文，严格按照给定的 JSON 结构输出。

待分析考点：
"{topic}"

教学策略：
1. 先用大白话（simpleExplanation）讲通核心逻辑，再给出背景（backgroundContext）和常见误解（misconceptions）。
2. 把理论拆成 4-6 个逻辑递进的微步骤（deconstruction），最后用一段话（synthesis）重新组合。
3. 建立知识网络（integration）：概念层级路径、2 个前置知识、2 个易混概念对比、1 个综合案例。
4. 给出严谨的考试标准定义（definition）、3-5 个核心要点（coreTheory）和 3-5 个采分关键词（keywords，简短术语）。
5. 辅助记忆：一个类比（analogy）、一句口诀（mnemonic）、一个记忆宫殿场景（memoryPalace）。
6. 练习：5 道模拟真题（flashcards）和 5 道填空题（fillInTheBlanks），每道填空题的 context 中恰好出现一次 "_____"，answer 是被挖去的词。
"""

EVALUATION_TEMPLATE = """你是一位严格的考试阅卷老师。用户正在用费曼技巧（用自己的话解释）复述一个概念。

标准定义："{definition}"

请听用户的录音，然后：
1. 判断用户是否真正理解了核心逻辑，而不是死记硬背；
2. 列出遗漏的关键采分点（missingPoints）；
3. 给出 0-100 的评分（score）和详细的中文反馈（feedback）；
4. 写出一段用户本应说出的简明解释（betterExplanation）。

请返回 JSON。
"""

IMAGE_PROMPT_PREFIX = "Create a vivid, detailed illustration suitable for a memory palace scene: "

VIDEO_PROMPT_PREFIX = "Cinematic, high quality, clear video of: "


def build_study_material_prompt(topic: str) -> str:
    return STUDY_MATERIAL_TEMPLATE.format(topic=topic.replace('"', "'"))


def build_evaluation_prompt(definition: str) -> str:
    return EVALUATION_TEMPLATE.format(definition=definition.replace('"', "'"))
