"""Unit tests for ledger parsing and rendering."""

from __future__ import annotations

from datetime import date

from storyflow.stories.ledger import parse, render
from storyflow.stories.models import Story, StoryState, is_story_id


def _by_id(stories: list[Story]) -> dict[str, Story]:
    return {s.id: s for s in stories}


def test_parse_sample_ledger(sample_ledger: str) -> None:
    result = parse(sample_ledger)

    assert result.errors == []
    assert result.preamble == "# Workflow Status\n"
    assert [s.id for s in result.stories] == ["STORY-011", "STORY-012", "STORY-013", "STORY-007"]

    stories = _by_id(result.stories)
    assert stories["STORY-011"].state is StoryState.BACKLOG
    assert stories["STORY-011"].points == 13
    assert stories["STORY-011"].milestone == "Milestone 2.0: Advanced Features"
    assert stories["STORY-012"].assignee == "bob"
    assert stories["STORY-013"].state is StoryState.IN_PROGRESS
    assert stories["STORY-013"].started_date == date(2025, 10, 25)
    assert stories["STORY-013"].milestone is None
    assert stories["STORY-007"].completed is True
    assert stories["STORY-007"].completed_date == date(2025, 10, 20)


def test_parse_normalizes_ids_markers_and_zero_points() -> None:
    text = "## BACKLOG\n- [X] **[story-1]** Lower case id | 0 points\n- [ ] [PROJ-22] Plain id | 3\n"

    result = parse(text)

    assert result.errors == []
    first, second = result.stories
    assert first.id == "STORY-1"
    assert first.completed is True
    assert first.points is None
    assert second.id == "PROJ-22"
    assert second.points == 3


def test_parse_collects_line_errors_and_keeps_going() -> None:
    text = "\n".join(
        [
            "## BACKLOG",
            "- [ ] **[STORY-001]** Good | 3 points",
            "- [ ] no id here",
            "- [ ] **[STORY-002]** Bad date | Due: 2025-13-45",
            "- [ ] **[NOPE]** Bad id",
            "- [ ] **[STORY-003]** Also good",
        ]
    )

    result = parse(text)

    assert [s.id for s in result.stories] == ["STORY-001", "STORY-003"]
    assert len(result.errors) == 3
    assert result.errors[0].startswith("Line 3:")
    assert result.errors[1].startswith("Line 4:")
    assert "due" in result.errors[1]
    assert result.errors[2].startswith("Line 5:")
    assert result.rejected[StoryState.BACKLOG] == [
        "- [ ] no id here",
        "- [ ] **[STORY-002]** Bad date | Due: 2025-13-45",
        "- [ ] **[NOPE]** Bad id",
    ]


def test_parse_rejects_duplicate_ids() -> None:
    text = "## TODO\n- [ ] **[STORY-001]** First\n## BACKLOG\n- [ ] **[story-001]** Again\n"

    result = parse(text)

    assert len(result.stories) == 1
    assert result.stories[0].state is StoryState.TODO
    assert result.errors == [
        "Line 4: Duplicate story id STORY-001 (first defined on line 2)"
    ]


def test_parse_reports_items_outside_sections() -> None:
    text = "\n".join(
        [
            "- [ ] **[STORY-001]** Before any section",
            "## Notes",
            "- [ ] **[STORY-002]** Under an unknown heading",
            "## TODO",
            "- [ ] **[STORY-003]** Fine",
        ]
    )

    result = parse(text)

    assert [s.id for s in result.stories] == ["STORY-003"]
    assert [e.split(":")[0] for e in result.errors] == ["Line 1", "Line 3"]


def test_milestone_resets_at_section_boundary_and_notes_are_ignored() -> None:
    text = "\n".join(
        [
            "## BACKLOG",
            "### Milestone 1.0: Basics",
            "- [ ] **[STORY-001]** In milestone",
            "- just a note, not a checklist item",
            "## TODO",
            "- [ ] **[STORY-002]** No milestone",
        ]
    )

    result = parse(text)

    assert result.errors == []
    stories = _by_id(result.stories)
    assert stories["STORY-001"].milestone == "Milestone 1.0: Basics"
    assert stories["STORY-002"].milestone is None


def test_unrecognized_fields_are_kept_for_rendering() -> None:
    text = "## BACKLOG\n- [ ] **[STORY-001]** Title | 2 points | Priority: high\n"

    story = parse(text).stories[0]

    assert story.extra_fields == ("Priority: high",)
    assert "| 2 points | Priority: high" in render([story])


def test_render_round_trips_data_fields(sample_ledger: str) -> None:
    first = parse(sample_ledger)

    second = parse(render(first.stories, preamble=first.preamble))

    assert second.errors == []
    assert sorted(second.stories, key=lambda s: s.id) == sorted(first.stories, key=lambda s: s.id)
    assert second.preamble == first.preamble


def test_render_layout() -> None:
    stories = [
        Story(id="STORY-002", title="Later", state=StoryState.BACKLOG, milestone="Milestone 2"),
        Story(id="STORY-001", title="Now", state=StoryState.BACKLOG, points=1),
        Story(
            id="STORY-009",
            title="Shipped",
            state=StoryState.DONE,
            completed=True,
            completed_date=date(2025, 10, 20),
        ),
    ]

    text = render(stories)

    assert text.startswith("# Workflow Status\n\n## BACKLOG\n")
    assert text.index("**[STORY-001]**") < text.index("### Milestone 2") < text.index("**[STORY-002]**")
    assert "- [ ] **[STORY-001]** Now | 1 point\n" in text
    assert "- [x] **[STORY-009]** Shipped | Completed: 2025-10-20\n" in text
    for header in ("## BACKLOG", "## TODO", "## IN PROGRESS", "## DONE"):
        assert header in text
    assert text.endswith("\n") and not text.endswith("\n\n")


def test_render_keeps_rejected_lines() -> None:
    text = "## TODO\n- [ ] **[STORY-001]** Good\n- [ ] broken line\n"
    result = parse(text)

    rendered = render(result.stories, preamble=result.preamble, rejected=result.rejected)

    assert "- [ ] broken line" in rendered
    todo_section = rendered.split("## TODO")[1].split("## IN PROGRESS")[0]
    assert "broken line" in todo_section


def test_is_story_id() -> None:
    assert is_story_id("STORY-001")
    assert is_story_id("proj-7")
    assert not is_story_id("STORY")
    assert not is_story_id("001-STORY")


def test_unrecognised_sections_are_kept_verbatim() -> None:
    text = "\n".join(
        [
            "## BACKLOG",
            "- [ ] **[STORY-001]** Plan",
            "## BLOCKED",
            "Waiting on the design review.",
            "- [ ] **[STORY-002]** Blocked work | 3 points",
            "## TODO",
            "- [ ] **[STORY-003]** Next",
        ]
    )

    result = parse(text)

    assert [s.id for s in result.stories] == ["STORY-001", "STORY-003"]
    assert result.errors == ["Line 5: Story line outside of a status section"]
    assert result.extra_sections == (
        "## BLOCKED\nWaiting on the design review.\n"
        "- [ ] **[STORY-002]** Blocked work | 3 points\n"
    )

    rendered = render(
        result.stories,
        preamble=result.preamble,
        rejected=result.rejected,
        extra_sections=result.extra_sections,
    )

    assert rendered.endswith(result.extra_sections)
    assert parse(rendered).extra_sections == result.extra_sections
