"""
chat.py - Chat agent tool catalog

    web_search         search the web
    generate_image     text-to-image, optionally guided by a reference image
    edit_image         modify an existing image
    analyze_document   summarize / extract / answer / translate a document
    code_interpreter   run Python for image processing
    deep_research      multi-round research (conditional: "deep_research")

Attachments come from ToolContext: when the model omits an image or
document argument, the first one attached to the conversation is used.
"""

from typing import Literal

from pydantic import BaseModel, Field

from ..registry import ToolRegistry, tool
from ..types import ToolCallbacks, ToolContext, ToolExecutionResult
from .backends import ToolBackends

STYLE_SUFFIXES = {
    "realistic": "photorealistic, highly detailed, 8k resolution",
    "anime": "anime style, vibrant colors, detailed illustration",
    "artistic": "artistic, creative, unique style",
    "photo": "photograph, professional photography, high quality",
}


# =============================================================================
# Input Models
# =============================================================================

class WebSearchInput(BaseModel):
    query: str = Field(description="Search keywords")
    max_results: int = Field(default=5, ge=1, le=20, description="Maximum number of results")


class DeepResearchInput(BaseModel):
    topic: str = Field(description="Research topic")
    reasoning_effort: Literal["low", "medium", "high"] = Field(
        default="low", description="low (1-3 min), medium (3-7 min), high (7-15 min)")
    context: str | None = Field(default=None, description="Extra background information")


class GenerateImageInput(BaseModel):
    prompt: str = Field(description="Image description")
    style: Literal["realistic", "anime", "artistic", "photo"] | None = None
    reference_image_url: str | None = Field(
        default=None, description="Reference image URL, e.g. one the user uploaded")
    aspect_ratio: Literal["auto", "1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3"] = "1:1"
    resolution: Literal["1k", "2k", "4k"] | None = None


class EditImageInput(BaseModel):
    image_url: str | None = Field(default=None, description="Image to edit; defaults to the first uploaded image")
    edit_prompt: str = Field(description="How the image should change")
    mask_area: str | None = Field(default=None, description="Region to edit")


class AnalyzeDocumentInput(BaseModel):
    document_content: str | None = Field(default=None, description="Document text if already extracted")
    analysis_type: Literal["summary", "extract", "qa", "translate"] = "summary"
    query: str | None = Field(default=None, description="Question about the document")


class CodeInterpreterInput(BaseModel):
    code: str = Field(description="Python code to run")
    image_url: str | None = Field(default=None, description="Input image; defaults to the first uploaded image")
    operation: Literal["resize", "crop", "filter", "convert", "analyze", "custom"] | None = None


# =============================================================================
# Catalog
# =============================================================================

def build_chat_registry(backends: ToolBackends) -> ToolRegistry:
    """Build the chat agent's registry on top of the given back-ends."""

    @tool("web_search", "Search the internet for current information: news, facts, documentation.",
          WebSearchInput)
    async def web_search(args: WebSearchInput, context: ToolContext, callbacks: ToolCallbacks):
        search = backends.require("search")
        await callbacks.on_progress(f"searching: {args.query}")
        found = await search(args.query, args.max_results, callbacks=callbacks)
        if isinstance(found, dict):
            results = found.get("results", [])
            answer = found.get("answer")
        else:
            results, answer = list(found), None
        return ToolExecutionResult.ok(
            data={"query": args.query, "answer": answer, "count": len(results)},
            search_results=results,
        )

    @tool("deep_research",
          "Research a complex topic over several search rounds and return a structured report. Slow.",
          DeepResearchInput, conditional=True)
    async def deep_research(args: DeepResearchInput, context: ToolContext, callbacks: ToolCallbacks):
        research = backends.require("research")
        await callbacks.on_progress(f"researching ({args.reasoning_effort}): {args.topic}")
        report = await research(args.topic, args.reasoning_effort, args.context, callbacks=callbacks)
        return ToolExecutionResult.ok(data={"topic": args.topic}, research_report=report)

    @tool("generate_image",
          "Generate an image from a text description. Supports styles, aspect ratios and an optional "
          "reference image (uploaded images are used automatically).",
          GenerateImageInput)
    async def generate_image(args: GenerateImageInput, context: ToolContext, callbacks: ToolCallbacks):
        image = backends.require("image")
        await callbacks.on_progress("preparing image generation")
        prompt = args.prompt
        if args.style:
            prompt = f"{prompt}, {STYLE_SUFFIXES[args.style]}"
        reference = args.reference_image_url or (context.attached_media[0] if context.attached_media else None)
        url = await image(
            prompt,
            [reference] if reference else [],
            args.aspect_ratio,
            args.resolution,
            callbacks=callbacks,
        )
        return ToolExecutionResult.ok(data={"prompt": prompt}, image_url=url)

    @tool("edit_image", "Edit or modify an existing image according to an instruction.", EditImageInput)
    async def edit_image(args: EditImageInput, context: ToolContext, callbacks: ToolCallbacks):
        target = args.image_url or (context.attached_media[0] if context.attached_media else None)
        if not target:
            return ToolExecutionResult.failure("no image to edit: pass image_url or upload an image")
        image_edit = backends.require("image_edit")
        await callbacks.on_progress("preparing image edit")
        url = await image_edit(target, args.edit_prompt, args.mask_area, callbacks=callbacks)
        return ToolExecutionResult.ok(data={"source_image": target}, image_url=url)

    @tool("analyze_document",
          "Analyze an uploaded document: summary, extract key information, answer a question, or translate.",
          AnalyzeDocumentInput)
    async def analyze_document(args: AnalyzeDocumentInput, context: ToolContext, callbacks: ToolCallbacks):
        content = args.document_content
        filename = None
        if not content and context.attached_documents:
            doc = context.attached_documents[0]
            content, filename = doc.content, doc.filename
            await callbacks.on_progress(f"using uploaded document: {doc.filename}")
        if not content:
            return ToolExecutionResult.failure("no document content available")
        if args.analysis_type == "qa" and not args.query:
            return ToolExecutionResult.failure("analysis_type 'qa' requires a query")
        documents = backends.require("documents")
        analysis = await documents(content, args.analysis_type, args.query, callbacks=callbacks)
        return ToolExecutionResult.ok(
            data={"analysis_type": args.analysis_type, "filename": filename},
            analysis=analysis,
        )

    @tool("code_interpreter", "Run Python code for image processing (resize, crop, filter, convert, analyze).",
          CodeInterpreterInput)
    async def code_interpreter(args: CodeInterpreterInput, context: ToolContext, callbacks: ToolCallbacks):
        code = backends.require("code")
        image_url = args.image_url or (context.attached_media[0] if context.attached_media else None)
        await callbacks.on_progress("running code")
        outcome = await code(args.code, image_url, args.operation, callbacks=callbacks) or {}
        output = outcome.get("output", "")
        if output and callbacks.on_chunk is not None:
            await callbacks.on_chunk(output)
        if outcome.get("error"):
            return ToolExecutionResult.failure(outcome["error"], output=output)
        extras = {"output": output}
        if outcome.get("image_url"):
            extras["image_url"] = outcome["image_url"]
        return ToolExecutionResult.ok(**extras)

    registry = ToolRegistry()
    for descriptor in (web_search, generate_image, edit_image, analyze_document, code_interpreter):
        registry.register(descriptor)
    registry.register(deep_research, conditional=True)
    return registry
