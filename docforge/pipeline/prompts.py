"""Prompt templates and pipeline constants.

No runtime logic beyond ``str.format``; pure data only.
"""

# ---------------------------------------------------------------------------
# Pipeline constants
# ---------------------------------------------------------------------------

# Share of the model context window spent on file content in structural
# prompts. The rest is left for instructions and the response.
FILE_CONTEXT_SHARE: float = 0.7

# Rough characters-per-token ratio for budgeting prompt size.
CHARS_PER_TOKEN: float = 3.5

# Ratio of a truncated file kept from the head; the remainder comes from the tail.
TRUNCATION_HEAD_SHARE: float = 0.8

# Structural stages produce compact JSON.
STRUCTURE_MAX_TOKENS: int = 4096

DOCUMENTATION_MODES: dict[str, dict[str, str]] = {
    "tutorial": {
        "audience": "a beginner who has never seen this codebase",
        "unit_noun": "abstraction",
        "style": (
            "Explain with concrete analogies, walk through a minimal usage example, "
            "and keep code blocks under 10 lines."
        ),
    },
    "architecture": {
        "audience": "an experienced engineer joining the team",
        "unit_noun": "component",
        "style": (
            "Describe responsibilities, boundaries, data flow and failure handling. "
            "Prefer diagrams and precise terminology over analogies."
        ),
    },
}

SYSTEM_PROMPT = (
    "You are a technical writer producing documentation from source code. "
    "Only describe behavior that is visible in the provided files."
)

# ---------------------------------------------------------------------------
# Structural discovery
# ---------------------------------------------------------------------------

ABSTRACTIONS_PROMPT = """\
For the project `{project_name}`:

Codebase context:
{file_context}

Identify the top {max_abstractions} core {unit_noun}s that help {audience} understand the codebase.

For each, provide:
1. A concise `name`{language_hint}.
2. A `description` of 50 to 100 words{language_hint}.
3. The `files`: indices of the relevant files, taken from this list:
{file_listing}

Respond with ONLY a JSON object, no commentary:
{{"abstractions": [{{"name": "...", "description": "...", "files": [0, 3]}}]}}
"""

# ---------------------------------------------------------------------------
# Relationships and ordering
# ---------------------------------------------------------------------------

ORDERING_PROMPT = """\
Based on the following {unit_noun}s of the project `{project_name}`:

{abstraction_listing}

Context from the code:
{file_context}

1. Write a high-level `summary` of the project's purpose{language_hint}.
2. List `relationships` between {unit_noun}s as {{"from": index, "to": index, "label": "..."}}.
   "from" uses or depends on "to". Every {unit_noun} should take part in at least one relationship.
3. Give the best `order` (list of indices) to explain the {unit_noun}s to {audience}:
   foundational concepts first, then the ones that build on them.

Respond with ONLY a JSON object, no commentary:
{{"summary": "...", "relationships": [{{"from": 0, "to": 1, "label": "Uses"}}], "order": [1, 0]}}
"""

# ---------------------------------------------------------------------------
# Per-unit writing
# ---------------------------------------------------------------------------

CHAPTER_PROMPT = """\
Write a documentation chapter{language_hint} about the {unit_noun} "{name}" of the project `{project_name}`.

Description:
{description}

Related {unit_noun}s (with chapter filenames for cross-links):
{related}

Full chapter list:
{chapter_listing}

Relevant code:
{file_context}

Audience: {audience}. {style}
Start with the heading `# {name}`. Output only the Markdown of the chapter.
"""

PLACEHOLDER_CHAPTER = """\
# {title}

> This chapter could not be generated in this run ({error}).
> It will be regenerated on the next run.
"""
