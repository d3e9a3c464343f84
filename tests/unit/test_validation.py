"""
Unit tests for pipeline input validation and sanitization.
"""

from hiro.pipelines.validation import (
    detect_score_range_overlaps,
    sanitize_input,
    validate_color,
    validate_contact_ids,
    validate_pipeline_ids,
    validate_pipeline_name,
    validate_score_range,
    validate_stage_order,
)


def test_score_range_valid():
    assert validate_score_range(0, 100) == {"valid": True, "errors": []}


def test_score_range_reports_every_problem():
    result = validate_score_range(90, 120)
    assert result["valid"] is False
    assert "lead_score_max must be between 0 and 100" in result["errors"]

    inverted = validate_score_range(60, 40)
    assert inverted["errors"] == ["lead_score_min must be less than or equal to lead_score_max"]


def test_score_range_rejects_non_numbers():
    assert validate_score_range("10", 20)["errors"] == ["Lead scores must be numbers"]
    assert validate_score_range(True, 20)["valid"] is False


def test_contact_ids_limits():
    assert validate_contact_ids(["a", "b"])["valid"] is True
    assert validate_contact_ids("a")["errors"] == ["contact_ids must be an array"]
    assert validate_contact_ids([])["errors"] == ["contact_ids array cannot be empty"]
    too_many = validate_contact_ids([str(i) for i in range(1001)])
    assert too_many["errors"] == ["contact_ids array cannot exceed 1000 items (use batch processing)"]
    assert validate_contact_ids(["a", 3])["errors"] == ["All contact_ids must be strings"]


def test_pipeline_ids_limit():
    assert validate_pipeline_ids([str(i) for i in range(100)])["valid"] is True
    assert validate_pipeline_ids([str(i) for i in range(101)])["valid"] is False


def test_pipeline_name():
    assert validate_pipeline_name("Sales")["valid"] is True
    assert validate_pipeline_name("   ")["errors"] == ["Pipeline name cannot be empty"]
    assert validate_pipeline_name("x" * 101)["errors"] == ["Pipeline name cannot exceed 100 characters"]
    assert validate_pipeline_name(None)["valid"] is False


def test_stage_order():
    assert validate_stage_order(0)["valid"] is True
    assert validate_stage_order(-1)["errors"] == ["Stage order cannot be negative"]
    assert validate_stage_order(1.5)["errors"] == ["Stage order must be an integer"]
    assert validate_stage_order(2.0)["valid"] is True
    assert validate_stage_order("1")["valid"] is False


def test_overlaps_ignore_terminal_stages():
    stages = [
        {"name": "A", "type": "LEAD", "lead_score_min": 0, "lead_score_max": 30},
        {"name": "B", "type": "IN_PROGRESS", "lead_score_min": 25, "lead_score_max": 50},
        {"name": "C", "type": "IN_PROGRESS", "lead_score_min": 51, "lead_score_max": 80},
        {"name": "Lost", "type": "LOST", "lead_score_min": 0, "lead_score_max": 20},
    ]
    assert detect_score_range_overlaps(stages) == [
        {"stage1": "A", "stage2": "B", "overlap": "25-30"},
    ]


def test_shared_boundary_counts_as_overlap():
    stages = [
        {"name": "A", "type": "IN_PROGRESS", "lead_score_min": 31, "lead_score_max": 43},
        {"name": "B", "type": "IN_PROGRESS", "lead_score_min": 43, "lead_score_max": 55},
    ]
    assert detect_score_range_overlaps(stages)[0]["overlap"] == "43-43"


def test_sanitize_input():
    assert sanitize_input("  Ana<script>alert(1)</script> ") == "Ana"
    assert sanitize_input("<b>Bo</b>") == "Bo"
    assert sanitize_input("javascript:go()") == "go()"
    assert sanitize_input("x onclick=steal()") == "x steal()"


def test_validate_color():
    assert validate_color("#3B82F6")["valid"] is True
    assert validate_color("3b82f6")["valid"] is False
    assert validate_color("#3b82f")["valid"] is False
    assert validate_color(None)["errors"] == ["Color must be a string"]
