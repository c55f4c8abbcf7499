"""
Tests for the skill library: SKILL.md parsing and keyword matching.
"""
from canvas_agent.skills import SkillLoader, default_loader

SAMPLE_SKILL = """---
id: poster
name: 节日海报
description: Festival poster with large Chinese title
keywords: 海报, 节日, poster
category: marketing
difficulty: easy
---

## Base Prompt

```text
A festive poster with the title "{{TITLE}}" in {{COLORS}}.
```

## Variables

- TITLE (required): 海报标题
- COLORS (optional, default: red and gold): 主色调

## Quality Checklist

- 标题是否清晰
- 颜色是否喜庆

## Common Issues

- 标题乱码 | 减少文字 | with Chinese text "XXX" clearly displayed
- 画面拥挤 | 留白
"""


def write_skill(root, folder, content):
    skill_dir = root / folder
    skill_dir.mkdir()
    (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")


def test_parse_skill_md(tmp_path):
    """Test: Frontmatter and sections are parsed into a Skill."""
    write_skill(tmp_path, "poster", SAMPLE_SKILL)
    loader = SkillLoader(tmp_path)
    skill = loader.get("poster")

    assert skill is not None
    assert skill.name == "节日海报"
    assert skill.keywords == ["海报", "节日", "poster"]
    assert skill.category == "marketing"
    assert skill.difficulty == "easy"
    assert skill.base_prompt == 'A festive poster with the title "{{TITLE}}" in {{COLORS}}.'

    title, colors = skill.variables
    assert title.name == "TITLE" and title.required and title.default is None
    assert colors.name == "COLORS" and not colors.required and colors.default == "red and gold"

    assert skill.quality_checklist == ["标题是否清晰", "颜色是否喜庆"]
    assert skill.common_issues[0] == {
        "issue": "标题乱码", "solution": "减少文字", "prompt_fix": 'with Chinese text "XXX" clearly displayed',
    }
    assert skill.common_issues[1]["prompt_fix"] == ""


def test_malformed_and_stray_files_are_skipped(tmp_path):
    write_skill(tmp_path, "poster", SAMPLE_SKILL)
    write_skill(tmp_path, "broken", "no frontmatter here")
    write_skill(tmp_path, "nameless", "---\nid: nameless\n---\nbody")
    (tmp_path / "README.md").write_text("not a skill", encoding="utf-8")
    (tmp_path / "empty").mkdir()

    assert SkillLoader(tmp_path).ids() == ["poster"]


def test_missing_directory(tmp_path):
    loader = SkillLoader(tmp_path / "nope")
    assert loader.ids() == []
    assert loader.get_descriptions() == "(no skills available)"
    assert not loader.match("海报").matched


def test_missing_variables(tmp_path):
    write_skill(tmp_path, "poster", SAMPLE_SKILL)
    skill = SkillLoader(tmp_path).get("poster")
    assert skill.missing_variables(None) == ["TITLE"]
    assert skill.missing_variables({"TITLE": ""}) == ["TITLE"]
    assert skill.missing_variables({"TITLE": "新年快乐"}) == []


def test_bundled_skills_load():
    loader = default_loader()
    assert set(loader.ids()) >= {
        "product-showcase", "tutorial-infographic", "pixar-story-sequence", "ppt-generator", "budget-visualization",
    }
    assert default_loader() is loader
    for skill in loader.skills.values():
        assert skill.base_prompt, f"{skill.id} has no base prompt"
        assert any(v.required for v in skill.variables), f"{skill.id} has no required variables"
    assert "product-showcase" in loader.get_descriptions()


def test_match_by_keywords():
    """Test: Keyword hits pick the right template."""
    loader = default_loader()
    match = loader.match("帮我做一张产品展示图，要有玻璃卡片和霓虹灯效果")
    assert match.matched
    assert match.skill_id == "product-showcase"
    assert match.skill_name == "产品名片展示图"
    assert 0 < match.confidence <= 1.0
    assert match.all_matches[0]["id"] == "product-showcase"
    assert len(match.all_matches) <= 3


def test_match_is_case_insensitive():
    match = default_loader().match("make a ppt about our annual results")
    assert match.skill_id == "ppt-generator"


def test_no_match():
    match = default_loader().match("a watercolor painting of mountains")
    assert not match.matched
    assert match.skill_id is None
    assert match.confidence == 0
    assert match.all_matches == []


def test_image_analysis_reranks(tmp_path):
    write_skill(tmp_path, "poster", SAMPLE_SKILL)
    write_skill(tmp_path, "story", SAMPLE_SKILL.replace("id: poster", "id: story")
                .replace("name: 节日海报", "name: 故事").replace("keywords: 海报, 节日, poster", "keywords: 故事, 节日"))
    loader = SkillLoader(tmp_path)

    tied = loader.match("节日图片")
    assert tied.all_matches[0]["score"] == tied.all_matches[1]["score"] == 10

    reranked = loader.match("节日图片", image_analysis="a poster with bold title")
    assert reranked.skill_id == "poster"
    assert reranked.all_matches[0]["score"] == 15
