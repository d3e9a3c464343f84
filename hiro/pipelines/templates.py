"""
Pipeline templates - ready-made stage layouts for common workflows.
"""

import logging

from hiro.db import models
from hiro.pipelines.stage_analyzer import apply_stage_score_ranges

logger = logging.getLogger("hiro.pipelines.templates")

PIPELINE_TEMPLATES = {
    "SALES": {
        "name": "Sales Pipeline",
        "description": "Track leads from initial contact to closed deal",
        "color": "#3b82f6",
        "icon": "💼",
        "stages": [
            {"name": "New Lead", "color": "#3b82f6", "type": "LEAD", "order": 0},
            {"name": "Contacted", "color": "#8b5cf6", "type": "IN_PROGRESS", "order": 1},
            {"name": "Qualified", "color": "#ec4899", "type": "IN_PROGRESS", "order": 2},
            {"name": "Proposal Sent", "color": "#f59e0b", "type": "IN_PROGRESS", "order": 3},
            {"name": "Negotiating", "color": "#14b8a6", "type": "IN_PROGRESS", "order": 4},
            {"name": "Closed Won", "color": "#10b981", "type": "WON", "order": 5},
            {"name": "Closed Lost", "color": "#ef4444", "type": "LOST", "order": 6},
        ],
    },
    "SUPPORT": {
        "name": "Customer Support",
        "description": "Manage support tickets and customer issues",
        "color": "#f59e0b",
        "icon": "🎧",
        "stages": [
            {"name": "New Ticket", "color": "#3b82f6", "type": "LEAD", "order": 0},
            {"name": "In Progress", "color": "#f59e0b", "type": "IN_PROGRESS", "order": 1},
            {"name": "Waiting on Customer", "color": "#8b5cf6", "type": "IN_PROGRESS", "order": 2},
            {"name": "Resolved", "color": "#10b981", "type": "WON", "order": 3},
            {"name": "Closed", "color": "#64748b", "type": "ARCHIVED", "order": 4},
        ],
    },
    "ONBOARDING": {
        "name": "Customer Onboarding",
        "description": "Guide new customers through onboarding",
        "color": "#10b981",
        "icon": "🚀",
        "stages": [
            {"name": "New Customer", "color": "#3b82f6", "type": "LEAD", "order": 0},
            {"name": "Setup Scheduled", "color": "#8b5cf6", "type": "IN_PROGRESS", "order": 1},
            {"name": "In Setup", "color": "#f59e0b", "type": "IN_PROGRESS", "order": 2},
            {"name": "Training", "color": "#ec4899", "type": "IN_PROGRESS", "order": 3},
            {"name": "Active", "color": "#10b981", "type": "WON", "order": 4},
            {"name": "Churned", "color": "#ef4444", "type": "LOST", "order": 5},
        ],
    },
}


def create_pipeline_from_template(organization_id: str, template_key: str,
                                  name: str = None) -> dict:
    """Create a pipeline with the template's stages and score ranges.

    Raises:
        KeyError: Unknown template key.
    """
    key = template_key.upper()
    if key not in PIPELINE_TEMPLATES:
        raise KeyError(f"Unknown pipeline template '{template_key}'. "
                       f"Choose from {', '.join(PIPELINE_TEMPLATES)}")
    template = PIPELINE_TEMPLATES[key]

    pipeline = models.create_pipeline(
        {
            "organization_id": organization_id,
            "name": name or template["name"],
            "description": template["description"],
            "color": template["color"],
            "icon": template["icon"],
        },
        stages=template["stages"],
    )
    apply_stage_score_ranges(pipeline["id"])
    logger.info("Created %s pipeline %s for org %s", key, pipeline["id"], organization_id)
    return models.get_pipeline(pipeline["id"])
