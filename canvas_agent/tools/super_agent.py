"""
super_agent.py - Super agent tool catalog

The super agent writes image-generation prompts. Most tools here are
bookkeeping around the model's own work (matching a template, checking
required variables, scoring a draft); only web_search, analyze_image and
deep_research reach external back-ends.

    skill_matcher     keyword match against the skill library
    load_skill        full template, variables, checklist, common issues
    generate_prompt   validate template variables, return writing guidelines
    web_search        prompt techniques / style references (offline fallback)
    analyze_image     describe a reference image
    optimize_prompt   record the next revision and what it must fix
    evaluate_prompt   rule-based 0-100 score
    finalize_output   normalize prompts into the final artifact (ends the run)
    deep_research     conditional ("deep_research")
"""

import json
import logging
import re
import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..registry import ToolRegistry, tool
from ..skills import SkillLoader, default_loader
from ..types import FinalOutput, PromptItem, ToolCallbacks, ToolContext, ToolExecutionResult
from .backends import ToolBackends

logger = logging.getLogger(__name__)

FINALIZE_TOOL = "finalize_output"
PASS_SCORE = 85
BASE_SCORE = 60
CHINESE_TEXT_CONSTRAINT = "All Chinese text must be exactly as specified"
QUALITY_WORDS = ("8k", "4k", "high quality", "professional", "resolution")
DEFAULT_MODEL = "nano-banana-pro"
DEFAULT_TIPS = [
    "Ideogram or DALL-E 3 render Chinese text more reliably",
    "If Chinese text renders badly, reduce the amount of text",
]

_QUOTED_CHINESE = re.compile(r'"([^"]*[一-龥]+[^"]*)"')

OFFLINE_SEARCH_TIPS = {
    "prompt_techniques": [
        'Use concrete style words such as "cinematic lighting", "photorealistic"',
        "Add negative prompts to exclude unwanted elements",
        "Describe from the whole scene down to details",
    ],
    "style_reference": [
        "Cyberpunk: neon lights, rain-soaked streets, holographic displays, dark atmosphere",
        "Pixar: 3D rendered, warm lighting, expressive characters, vibrant colors",
        "Anime: cel shading, large eyes, detailed backgrounds",
    ],
    "problem_solving": [
        "Garbled Chinese text: use fewer and shorter texts",
        'Crowded layout: add "generous spacing", "clean layout"',
        'Inconsistent style: add "consistent style throughout"',
    ],
    "trend_research": [
        "Glassmorphism, gradients and 3D elements remain popular",
        "Surrealism, concept art and mixed media in AI art",
    ],
}


# =============================================================================
# Input Models
# =============================================================================

class SkillMatcherInput(BaseModel):
    user_request: str = Field(description="The user's original request")
    reference_image_analysis: str | None = Field(default=None, description="Analysis of reference images, if any")


class LoadSkillInput(BaseModel):
    skill_id: str = Field(description="Skill id, e.g. product-showcase")


class GeneratePromptInput(BaseModel):
    user_request: str
    skill_id: str | None = None
    variables: dict[str, Any] | None = Field(default=None, description="Template variable values")
    reference_analysis: str | None = None
    search_insights: str | None = None


class SuperWebSearchInput(BaseModel):
    query: str
    search_type: Literal["prompt_techniques", "style_reference", "problem_solving", "trend_research"]


class AnalyzeImageInput(BaseModel):
    image_url: str
    analysis_focus: list[str] | None = Field(default=None, description="e.g. style, layout, colors, elements, text")


class OptimizePromptInput(BaseModel):
    current_prompt: str
    chinese_texts: list[str] = Field(default_factory=list)
    issues: list[str] | None = None
    optimization_tips: list[str] | None = None
    iteration: int = 0


class EvaluatePromptInput(BaseModel):
    prompt: str
    user_requirements: str = ""
    chinese_texts: list[str] = Field(default_factory=list)
    skill_checklist: list[str] | None = None


class FinalizeOutputInput(BaseModel):
    prompts: list[Any] = Field(description='Each item: {"scene": ..., "prompt": ..., "chinese_texts": [...]}. '
                                           "Multi-page requests (slides, steps, scenes) need several prompts.")
    generation_tips: list[str] | None = None
    recommended_model: str | None = None
    matched_skill: str | None = None


class SuperDeepResearchInput(BaseModel):
    topic: str
    required_info: list[str] | None = None
    context: str | None = None
    reasoning_effort: Literal["low", "medium", "high"] = "low"


# =============================================================================
# Scoring and Finalization
# =============================================================================

def evaluate_prompt_text(prompt: str, chinese_texts: list[str]) -> dict:
    """
    Rule-based score, 60 to start:

    +5 per Chinese text present in double quotes, +2 (with an issue) if
    present unquoted, -5 if missing; +5 for the exact-text constraint;
    +5 for any quality word. Clamped to 0-100, passes at 85.
    """
    score = BASE_SCORE
    issues: list[str] = []
    suggestions: list[str] = []

    for text in chinese_texts:
        if f'"{text}"' in prompt:
            score += 5
        elif text in prompt:
            score += 2
            issues.append(f'Chinese text "{text}" is not wrapped in quotes')
        else:
            score -= 5
            issues.append(f'Missing Chinese text: "{text}"')

    if CHINESE_TEXT_CONSTRAINT in prompt:
        score += 5
    else:
        suggestions.append(f'Add "{CHINESE_TEXT_CONSTRAINT} with no other text"')

    lowered = prompt.lower()
    if any(word in lowered for word in QUALITY_WORDS):
        score += 5
    else:
        suggestions.append('Add quality words such as "8K resolution", "ultra high quality"')

    score = max(0, min(100, score))
    return {"score": score, "passed": score >= PASS_SCORE, "issues": issues, "suggestions": suggestions}


def _prompt_item(raw: Any, index: int, stamp: int) -> PromptItem | None:
    scene = f"Scene {index + 1}"
    text = ""
    chinese: list[str] = []

    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            raw = parsed
        else:
            text = raw
            chinese = _QUOTED_CHINESE.findall(raw)

    if isinstance(raw, dict):
        text = raw.get("prompt") or raw.get("text") or raw.get("content") or ""
        scene = raw.get("scene") or raw.get("title") or raw.get("name") or scene
        chinese = raw.get("chinese_texts") or raw.get("chineseTexts") or raw.get("texts") or []

    if not isinstance(text, str) or not text.strip():
        return None
    return PromptItem(id=f"prompt-{stamp}-{index}", scene=str(scene), prompt=text,
                      chinese_texts=[str(c) for c in chinese])


def build_final_output(
    prompts: list[Any],
    generation_tips: list[str] | None = None,
    recommended_model: str | None = None,
    matched_skill: str | None = None,
) -> FinalOutput:
    """
    Normalize the finalize payload.

    prompts may hold objects, JSON strings, or plain prompt strings (for
    which quoted Chinese texts are extracted). Empty prompts are dropped.
    """
    stamp = int(time.time() * 1000)
    items = []
    for i, raw in enumerate(prompts or []):
        item = _prompt_item(raw, i, stamp)
        if item is not None:
            items.append(item)

    if len(items) == 1:
        final_prompt = items[0].prompt
    else:
        final_prompt = "\n\n---\n\n".join(f"【{p.scene}】\n{p.prompt}" for p in items)

    return FinalOutput(
        final_prompt=final_prompt,
        prompts=items,
        chinese_texts=list(dict.fromkeys(t for p in items for t in p.chinese_texts)),
        generation_tips=list(generation_tips or DEFAULT_TIPS),
        recommended_model=recommended_model or DEFAULT_MODEL,
        matched_skill=matched_skill,
    )


# =============================================================================
# Catalog
# =============================================================================

def build_super_registry(backends: ToolBackends, skills: SkillLoader | None = None) -> ToolRegistry:
    skills = skills or default_loader()

    @tool("skill_matcher",
          "Match the request against the preset skill templates. Returns the best match and a confidence, "
          "or matched=false when none fits.",
          SkillMatcherInput)
    async def skill_matcher(args: SkillMatcherInput, context: ToolContext, callbacks: ToolCallbacks):
        await callbacks.on_progress("matching skills")
        match = skills.match(args.user_request, args.reference_image_analysis)
        if match.matched:
            return ToolExecutionResult.ok({
                "matched": True,
                "skill_id": match.skill_id,
                "skill_name": match.skill_name,
                "confidence": match.confidence,
                "all_matches": match.all_matches,
            })
        return ToolExecutionResult.ok({
            "matched": False,
            "reason": "No preset skill fits; write the prompt from scratch",
            "suggestions": [
                "use web_search for prompt techniques",
                "use analyze_image if reference images were provided",
            ],
        })

    @tool("load_skill", "Load a skill's full template, variables, checklist and common fixes.", LoadSkillInput)
    def load_skill(args: LoadSkillInput, context: ToolContext, callbacks: ToolCallbacks):
        skill = skills.get(args.skill_id)
        if skill is None:
            return ToolExecutionResult.failure(
                f'skill "{args.skill_id}" does not exist; available: {", ".join(skills.ids())}')
        return ToolExecutionResult.ok(skill.to_dict())

    @tool("generate_prompt",
          "Write the prompt, filling the matched template or composing freely. Keep Chinese text verbatim.",
          GeneratePromptInput)
    def generate_prompt(args: GeneratePromptInput, context: ToolContext, callbacks: ToolCallbacks):
        skill = skills.get(args.skill_id) if args.skill_id else None
        if skill is not None:
            missing = skill.missing_variables(args.variables)
            if missing:
                return ToolExecutionResult.failure(
                    f"missing required variables: {', '.join(missing)}",
                    data={
                        "skill_template": skill.base_prompt,
                        "required_variables": [v.to_dict() for v in skill.variables if v.required],
                    },
                )
        return ToolExecutionResult.ok({
            "message": "Write the complete prompt from the information above",
            "template": skill.base_prompt if skill else None,
            "guidelines": [
                "1. Keep every Chinese text verbatim, wrapped in double quotes",
                "2. Never translate Chinese text into English",
                "3. State where each Chinese text appears in the image",
                f'4. Add "{CHINESE_TEXT_CONSTRAINT} with no other text"',
                "5. Add quality words such as 8K resolution, professional photography",
            ],
        })

    @tool("web_search",
          "Search for prompt techniques, style references, fixes for rendering problems, or current trends.",
          SuperWebSearchInput)
    async def web_search(args: SuperWebSearchInput, context: ToolContext, callbacks: ToolCallbacks):
        await callbacks.on_progress(f"searching: {args.query}")
        if backends.search is not None:
            try:
                found = await backends.search(args.query, 5, callbacks=callbacks)
            except Exception as e:
                logger.warning("search back-end failed, using offline tips: %s", e)
            else:
                if isinstance(found, dict):
                    results, answer = found.get("results", []), found.get("answer")
                else:
                    results, answer = list(found), None
                summary = answer or "\n\n".join(str(r.get("content", "")) for r in results if isinstance(r, dict))
                return ToolExecutionResult.ok({
                    "query": args.query,
                    "search_type": args.search_type,
                    "answer": answer,
                    "results": results,
                    "summary": summary,
                })

        results = OFFLINE_SEARCH_TIPS.get(args.search_type, [f'No online results for "{args.query}" (offline)'])
        return ToolExecutionResult.ok({
            "query": args.query,
            "search_type": args.search_type,
            "results": results,
            "summary": "\n".join(results),
            "fallback": True,
        })

    @tool("analyze_image",
          "Analyze a reference image: style, layout, colors, elements and any text in it.",
          AnalyzeImageInput)
    async def analyze_image(args: AnalyzeImageInput, context: ToolContext, callbacks: ToolCallbacks):
        vision = backends.require("vision")
        focus = args.analysis_focus or ["style", "layout", "colors", "elements", "text"]
        await callbacks.on_progress("analyzing image")
        analysis = await vision(args.image_url, focus, callbacks=callbacks)
        return ToolExecutionResult.ok({"analysis": analysis, "image_url": args.image_url})

    @tool("optimize_prompt", "Revise the current prompt to fix evaluation issues or apply new tips.",
          OptimizePromptInput)
    def optimize_prompt(args: OptimizePromptInput, context: ToolContext, callbacks: ToolCallbacks):
        return ToolExecutionResult.ok({
            "current_prompt": args.current_prompt,
            "current_version": args.iteration,
            "next_version": args.iteration + 1,
            "issues_to_fix": args.issues or [],
            "tips_to_apply": args.optimization_tips or [],
            "chinese_texts_to_preserve": args.chinese_texts,
            "guidelines": [
                "1. Keep all Chinese text verbatim",
                "2. Add a fix for every issue",
                "3. Apply the optimization tips",
                "4. Keep the prompt fluent and coherent",
            ],
        })

    @tool("evaluate_prompt", "Score a prompt from 0 to 100 against the requirements and list its issues.",
          EvaluatePromptInput)
    def evaluate_prompt(args: EvaluatePromptInput, context: ToolContext, callbacks: ToolCallbacks):
        evaluation = evaluate_prompt_text(args.prompt, args.chinese_texts)
        evaluation["prompt"] = args.prompt
        evaluation["chinese_texts"] = list(args.chinese_texts)
        if args.skill_checklist:
            evaluation["checklist"] = list(args.skill_checklist)
        return ToolExecutionResult.ok(evaluation)

    @tool(FINALIZE_TOOL,
          "Output the final prompts once the score is at least 85 or iterations are running out. "
          "Supports several prompts for multi-page results. Ends the task.",
          FinalizeOutputInput)
    def finalize_output(args: FinalizeOutputInput, context: ToolContext, callbacks: ToolCallbacks):
        output = build_final_output(args.prompts, args.generation_tips, args.recommended_model,
                                    args.matched_skill)
        if not output.prompts:
            return ToolExecutionResult.failure("prompts contained no usable prompt text")
        return ToolExecutionResult.ok(output.to_dict())

    @tool("deep_research",
          "Multi-round web research on a topic the prompt depends on (events, products, facts).",
          SuperDeepResearchInput, conditional=True)
    async def deep_research(args: SuperDeepResearchInput, context: ToolContext, callbacks: ToolCallbacks):
        research = backends.require("research")
        background = args.context or ""
        if args.required_info:
            background = f"{background}\nRequired information: {', '.join(args.required_info)}".strip()
        report = await research(args.topic, args.reasoning_effort, background or None, callbacks=callbacks)
        return ToolExecutionResult.ok({"topic": args.topic, "research_summary": report})

    registry = ToolRegistry()
    for descriptor in (skill_matcher, load_skill, generate_prompt, web_search, analyze_image,
                       optimize_prompt, evaluate_prompt, finalize_output):
        registry.register(descriptor)
    registry.register(deep_research, conditional=True)
    return registry
