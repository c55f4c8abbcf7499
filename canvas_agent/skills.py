"""
skills.py - Prompt template ("skill") library for the super agent

A skill is a FOLDER under skill_templates/ containing a SKILL.md:

    ---
    id: product-showcase
    name: 产品名片展示图
    description: ...
    keywords: 产品展示, 名片, ...
    category: product-display
    ---

    ## Base Prompt
    ```text
    A hand holding ... "{{PRODUCT_NAME}}" ...
    ```

    ## Variables
    - PRODUCT_NAME (required): ...
    - COLORS (optional, default: purple and cyan): ...

    ## Quality Checklist
    - ...

    ## Common Issues
    - issue | solution | prompt fix

Metadata is loaded at startup (it goes into the system prompt and the
keyword matcher); the full template is only handed to the model when it
calls load_skill.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

SKILLS_DIR = Path(__file__).parent / "skill_templates"

MATCH_THRESHOLD = 10
KEYWORD_SCORE = 10
NAME_SCORE = 20
IMAGE_KEYWORD_SCORE = 5

_VARIABLE_LINE = re.compile(r"^-\s*([A-Z0-9_]+)\s*\(([^)]*)\)\s*:\s*(.*)$")


@dataclass
class SkillVariable:
    name: str
    description: str
    required: bool = False
    default: str | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description,
                "required": self.required, "default": self.default}


@dataclass
class Skill:
    id: str
    name: str
    description: str
    keywords: list[str]
    category: str = "general"
    difficulty: str = "medium"
    base_prompt: str = ""
    variables: list[SkillVariable] = field(default_factory=list)
    quality_checklist: list[str] = field(default_factory=list)
    common_issues: list[dict] = field(default_factory=list)
    path: Path | None = None

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "keywords": list(self.keywords),
            "category": self.category,
        }

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            "difficulty": self.difficulty,
            "base_prompt": self.base_prompt,
            "variables": [v.to_dict() for v in self.variables],
            "quality_checklist": list(self.quality_checklist),
            "common_issues": list(self.common_issues),
        }

    def missing_variables(self, values: dict | None) -> list[str]:
        values = values or {}
        return [v.name for v in self.variables if v.required and not values.get(v.name)]


@dataclass
class SkillMatch:
    matched: bool
    skill_id: str | None
    skill_name: str | None
    confidence: float
    all_matches: list[dict]


def _parse_sections(body: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    current = None
    lines: list[str] = []
    for line in body.splitlines():
        if line.startswith("## "):
            if current is not None:
                sections[current] = "\n".join(lines).strip()
            current = line[3:].strip().lower()
            lines = []
        elif current is not None:
            lines.append(line)
    if current is not None:
        sections[current] = "\n".join(lines).strip()
    return sections


def _bullets(text: str) -> list[str]:
    return [line[1:].strip() for line in text.splitlines() if line.strip().startswith("-")]


def _parse_variable(line: str) -> SkillVariable | None:
    match = _VARIABLE_LINE.match(line.strip())
    if not match:
        return None
    name, flags, description = match.groups()
    default = None
    if "default:" in flags:
        default = flags.split("default:", 1)[1].strip()
    return SkillVariable(name=name, description=description.strip(),
                         required=flags.strip().startswith("required"), default=default)


class SkillLoader:
    """Loads skills from SKILL.md folders."""

    def __init__(self, skills_dir: Path = SKILLS_DIR):
        self.skills_dir = skills_dir
        self.skills: dict[str, Skill] = {}
        self.load_skills()

    def parse_skill_md(self, path: Path) -> Skill | None:
        content = path.read_text(encoding="utf-8")

        match = re.match(r"^---\s*\n(.*?)\n---\s*\n(.*)$", content, re.DOTALL)
        if not match:
            return None
        frontmatter, body = match.groups()

        metadata = {}
        for line in frontmatter.strip().split("\n"):
            if ":" in line:
                key, value = line.split(":", 1)
                metadata[key.strip()] = value.strip().strip("\"'")

        if "id" not in metadata or "name" not in metadata:
            return None

        sections = _parse_sections(body)
        base = sections.get("base prompt", "")
        fenced = re.search(r"```[a-z]*\n(.*?)\n```", base, re.DOTALL)

        issues = []
        for item in _bullets(sections.get("common issues", "")):
            parts = [p.strip() for p in item.split("|")]
            parts += [""] * (3 - len(parts))
            issues.append({"issue": parts[0], "solution": parts[1], "prompt_fix": parts[2]})

        return Skill(
            id=metadata["id"],
            name=metadata["name"],
            description=metadata.get("description", ""),
            keywords=[k.strip() for k in metadata.get("keywords", "").split(",") if k.strip()],
            category=metadata.get("category", "general"),
            difficulty=metadata.get("difficulty", "medium"),
            base_prompt=(fenced.group(1) if fenced else base).strip(),
            variables=[v for v in map(_parse_variable, sections.get("variables", "").splitlines()) if v],
            quality_checklist=_bullets(sections.get("quality checklist", "")),
            common_issues=issues,
            path=path,
        )

    def load_skills(self):
        if not self.skills_dir.exists():
            logger.warning("skills directory %s not found", self.skills_dir)
            return

        for skill_dir in sorted(self.skills_dir.iterdir()):
            if not skill_dir.is_dir():
                continue
            skill_md = skill_dir / "SKILL.md"
            if not skill_md.exists():
                continue
            skill = self.parse_skill_md(skill_md)
            if skill:
                self.skills[skill.id] = skill
            else:
                logger.warning("skipping malformed skill file %s", skill_md)

    def get(self, skill_id: str) -> Skill | None:
        return self.skills.get(skill_id)

    def ids(self) -> list[str]:
        return list(self.skills.keys())

    def summaries(self) -> list[dict]:
        return [s.summary() for s in self.skills.values()]

    def get_descriptions(self) -> str:
        """One line per skill for the system prompt."""
        if not self.skills:
            return "(no skills available)"
        return "\n".join(
            f"- **{s.id}**: {s.name} - {s.description} (keywords: {', '.join(s.keywords[:5])})"
            for s in self.skills.values()
        )

    def match(self, user_request: str, image_analysis: str | None = None) -> SkillMatch:
        """
        Keyword scoring: +10 per keyword found, +20 if the skill name appears.

        A score of 10 or more is a match; confidence is score/50 capped at 1.
        Keywords found in a reference-image analysis add 5 each to re-rank.
        """
        request = user_request.lower()
        analysis = (image_analysis or "").lower()
        scores = []
        for skill in self.skills.values():
            score = sum(KEYWORD_SCORE for k in skill.keywords if k.lower() in request)
            if skill.name.lower() in request:
                score += NAME_SCORE
            if analysis:
                score += sum(IMAGE_KEYWORD_SCORE for k in skill.keywords if k.lower() in analysis)
            scores.append({"id": skill.id, "name": skill.name, "score": score})

        scores.sort(key=lambda s: s["score"], reverse=True)
        top = scores[0] if scores else {"id": None, "name": None, "score": 0}
        matched = top["score"] >= MATCH_THRESHOLD
        return SkillMatch(
            matched=matched,
            skill_id=top["id"] if matched else None,
            skill_name=top["name"] if matched else None,
            confidence=min(top["score"] / 50, 1.0),
            all_matches=[s for s in scores if s["score"] > 0][:3],
        )


_default_loader: SkillLoader | None = None


def default_loader() -> SkillLoader:
    global _default_loader
    if _default_loader is None:
        _default_loader = SkillLoader()
    return _default_loader
