"""Prompt building blocks shared by the operations.

Operation-specific prompts live next to their operation; this module holds
the pieces several of them reuse, plus the project-context preamble every
model call starts with.
"""

from __future__ import annotations

import json
import logging
import re

from forge_codec.contracts import FileOutput
from phaseforge.domain.context import GenerationContext
from phaseforge.domain.file_processing import serialize_files
from phaseforge.schemas import ConversationMessage, ImageAttachment, PhaseConcept

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


# ---------------------------------------------------------------------------
# Shared prompt sections
# ---------------------------------------------------------------------------

COMMON_PITFALLS = """\
<COMMON_PITFALLS>
These patterns crash generated apps. Check for them first:
1. Render loops: setState during render, useEffect without a dependency array,
   object/array literals in dependency arrays, store selectors that return new objects.
2. Undefined access: data.items.length when data may be undefined; use ?. and ?? defaults.
3. Import failures: missing files, default vs named import mix-ups, packages not in
   the dependency list.
4. Invalid Tailwind classes or TypeScript types that break the build.
</COMMON_PITFALLS>"""

REACT_RENDER_LOOP_PREVENTION = """\
<REACT_RENDER_LOOP_PREVENTION>
"Maximum update depth exceeded" and "too many re-renders" come from state updates
that trigger themselves:
- Never call setState in the render body.
- Every useEffect that sets state needs a dependency array that does not include
  the state it sets.
- Select primitive values from stores one at a time, or wrap object selectors in
  useShallow.
- Memoise objects and callbacks passed as dependencies (useMemo / useCallback).
</REACT_RENDER_LOOP_PREVENTION>"""

PROTECTED_FILES = """\
<CRITICAL_CONSTRAINTS>
Never modify deployment infrastructure files (wrangler.jsonc, wrangler.toml,
worker/index.ts, worker/core-utils.ts, donttouch_files.json, .important_files.json).
Never write image files (.jpg, .png, .svg, .gif); reference image URLs instead.
</CRITICAL_CONSTRAINTS>"""


# ---------------------------------------------------------------------------
# Template helpers
# ---------------------------------------------------------------------------


def replace_template_variables(template: str, variables: dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left in place."""
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        return str(variables[key]) if key in variables else m.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


def verify_prompt(prompt: str) -> str:
    """Drop any ``{{placeholder}}`` left unfilled and collapse runs of blank lines."""
    leftovers = sorted(set(_PLACEHOLDER_RE.findall(prompt)))
    if leftovers:
        logger.warning("Prompt had unfilled placeholders: %s", ", ".join(leftovers))
        prompt = _PLACEHOLDER_RE.sub("", prompt)
    return re.sub(r"\n{3,}", "\n\n", prompt).strip()


def format_user_suggestions(suggestions: list[str] | None) -> str:
    if not suggestions:
        return ""
    numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(suggestions, 1))
    return (
        "<USER_SUGGESTIONS>\n"
        "Client feedback and suggestions (from the conversation agent):\n\n"
        f"{numbered}\n\n"
        "Address these with priority. Resolve them cleanly, not with hacks; they may "
        "span several phases. Include user-provided details (such as image URLs) verbatim.\n"
        "</USER_SUGGESTIONS>"
    )


def serialize_phase(phase: PhaseConcept) -> str:
    """Markdown rendering of a phase plan."""
    lines = [f"## {phase.name}", "", phase.description, "", "### Files"]
    for f in phase.files:
        lines.append(f"- `{f.path}` ({f.change_type}): {f.purpose}")
    if phase.install_commands:
        lines += ["", "### Install commands", *(f"- `{c}`" for c in phase.install_commands)]
    if phase.last_phase:
        lines += ["", "_This is the final phase._"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def user_message(text: str, images: list[ImageAttachment] | None = None) -> ConversationMessage:
    """Plain or multimodal user message (images first, then the text)."""
    if not images:
        return ConversationMessage(role="user", content=text)
    parts: list[dict] = [
        {
            "type": "image",
            "source": {"type": "base64", "media_type": img.mime_type, "data": img.base64_data},
        }
        for img in images
    ]
    parts.append({"type": "text", "text": text})
    return ConversationMessage(role="user", content=parts)


def image_message_from_data_url(text: str, data_url: str) -> ConversationMessage:
    """User message carrying one screenshot given as a data URL or bare base64."""
    media_type, data = "image/png", data_url
    m = re.match(r"^data:(?P<mt>[\w/+.-]+);base64,(?P<data>.*)$", data_url, re.DOTALL)
    if m:
        media_type, data = m.group("mt"), m.group("data")
    return user_message(text, [ImageAttachment(mime_type=media_type, base64_data=data)])


def project_context_messages(
    system_prompt: str,
    context: GenerationContext,
    *,
    include_codebase: bool = True,
) -> list[ConversationMessage]:
    """System prompt plus the project snapshot every operation starts from.

    Returns ``[system, user(project context), assistant(ack)]``.
    """
    sections = [
        f"<CLIENT_REQUEST>\n{context.query}\n</CLIENT_REQUEST>",
        f"<BLUEPRINT>\n{json.dumps(context.blueprint, indent=2)}\n</BLUEPRINT>",
        "<DEPENDENCIES>\nThese are the ONLY dependencies available.\n"
        + "\n".join(f"{name}: {ver}" for name, ver in sorted(context.dependencies.items()))
        + "\n</DEPENDENCIES>",
    ]
    if context.template_details:
        sections.append(
            f"<STARTING_TEMPLATE>\n{json.dumps(context.template_details, indent=2)}\n</STARTING_TEMPLATE>"
        )
    if context.completed_phases:
        done = "\n".join(f"- {p.name}: {p.description}" for p in context.completed_phases)
        sections.append(f"<COMPLETED_PHASES>\n{done}\n</COMPLETED_PHASES>")
    if include_codebase and context.all_files:
        sections.append(f"<CODEBASE>\n{serialize_files(context.all_files)}\n</CODEBASE>")

    return [
        ConversationMessage(role="system", content=system_prompt),
        ConversationMessage(role="user", content="\n\n".join(sections)),
        ConversationMessage(
            role="assistant",
            content="I have reviewed the project context and the current codebase.",
        ),
    ]


def serialize_file_list(files: list[FileOutput]) -> str:
    return "\n".join(f"- {f.file_path}: {f.file_purpose}" for f in files)
