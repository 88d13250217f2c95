"""
Agent instruction templates.

Every prompt asks for a single JSON object so the response can be read with
extract_json_block().
"""

from typing import List

from .task_model import Task

APP_TYPES = "iPhone app | web app | Chrome extension | Steam game"

IDEA_JSON_SHAPE = f"""{{
  "title": "app name",
  "overview": "compelling overview",
  "monetization": "concrete monetization strategy",
  "target": "clear target audience",
  "difficulty": "★ to ★★★",
  "type": "{APP_TYPES}"
}}"""


def refine_draft_prompt(title: str, notes: str) -> str:
    return f"""You are an experienced product manager.
Turn the following seed of an app idea into a plan that can be handed to a
development team.

User notes:
Title: {title}
Notes: {notes}

Reply with a single JSON object only, in this structure:
{IDEA_JSON_SHAPE}
"""


def apply_feedback_prompt(task: Task, feedback: str) -> str:
    return f"""Revise the app idea below according to the user's feedback.

App name: {task.title}
Overview: {task.overview}
Monetization: {task.monetization}
Target: {task.target}
Difficulty: {task.difficulty}
Type: {task.type}

Feedback: {feedback}

Reply with a single JSON object only, in this structure:
{IDEA_JSON_SHAPE}
"""


def project_identifier_prompt(task: Task) -> str:
    return f"""Suggest a short project identifier for the app below.
It must be lowercase English words joined by underscores (for example
"habit_tracker"), start with a letter and be at most 30 characters.

App name: {task.title}
Overview: {task.overview}

Reply with a single JSON object only: {{"name": "identifier"}}
"""


def design_document_prompt(task: Task) -> str:
    return f"""You are a senior Flutter engineer. Write the design document for
the app below so that a coding agent can implement it without further
questions.

App name: {task.title}
Overview: {task.overview}
Target: {task.target}
Monetization: {task.monetization}
Type: {task.type}

Reply with a single JSON object only, in this structure:
{{
  "summary": "one paragraph summary",
  "features": ["feature", "..."],
  "screens": [{{"name": "screen name", "description": "what it shows and does"}}],
  "data_model": [{{"name": "entity", "fields": ["field: type", "..."]}}],
  "packages": ["pub.dev package", "..."],
  "milestones": ["step", "..."]
}}
"""


def daily_ideas_prompt(month: str, existing_titles: List[str], count: int) -> str:
    history = ""
    if existing_titles:
        history = (
            "The following ideas were already proposed. Avoid duplicates and "
            f"similar directions:\n{', '.join(existing_titles)}\n"
        )
    return f"""You are a trend-aware product manager.
Research real needs as of {month}: complaints on social media, new everyday
hassles caused by recent changes in law, prices or work styles, and niche
tools trending abroad that are not yet localized.

{history}
Propose {count} apps an individual developer could build with Flutter,
focusing on technical feasibility and sharp monetization.

Reply with a single JSON object only, in this structure:
{{"ideas": [{IDEA_JSON_SHAPE}]}}
"""
