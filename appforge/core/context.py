"""
Project context for AI runs.

Selects which files of the base snapshot go into the prompt and renders the
system prompt.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from appforge.storage.models import ProjectFile

ESSENTIAL_FILES: Sequence[str] = (
    "package.json",
    "app/layout.tsx",
    "app/page.tsx",
    "app/globals.css",
    "tailwind.config.ts",
    "tsconfig.json",
    "next.config.ts",
    "README.md",
)

MAX_CHARS_PER_FILE = 10000
MAX_TOTAL_CHARS = 30000
# Smallest tail worth sending when the budget runs out mid-file
MIN_REMAINING_CHARS = 1000
TRUNCATION_MARKER = "\n/* TRUNCATED: file content exceeded limit */"


@dataclass
class ProjectContext:
    """Files sent to the model for one run."""
    selected_file: Optional[ProjectFile]
    essential_files: List[ProjectFile]
    file_list: List[str] = field(default_factory=list)

    @property
    def context_files_count(self) -> int:
        return (1 if self.selected_file else 0) + len(self.essential_files)

    @property
    def context_bytes(self) -> int:
        total = self.selected_file.size if self.selected_file else 0
        return total + sum(f.size for f in self.essential_files)


def _priority(path: str) -> tuple:
    try:
        return (0, ESSENTIAL_FILES.index(path), path)
    except ValueError:
        return (1, 0, path)


def truncate_content(content: str, limit: int) -> str:
    """Cut ``content`` to ``limit`` characters, marking the cut."""
    if len(content) <= limit:
        return content
    return content[:limit] + TRUNCATION_MARKER


def build_project_context(
    files: Sequence[ProjectFile],
    selected_file_path: Optional[str] = None,
    max_context_files: Optional[int] = None,
    max_chars_per_file: int = MAX_CHARS_PER_FILE,
    max_total_chars: int = MAX_TOTAL_CHARS,
) -> ProjectContext:
    """Build the context payload from a snapshot's files.

    The selected file always comes first. Remaining files are ordered with the
    essential files first (in their fixed priority), then by path. When the
    plan's file limit is exceeded, lower-priority files are trimmed and the
    selected file is kept.

    Every file is cut to ``max_chars_per_file`` characters. Files are added
    until ``max_total_chars`` is reached; the file that crosses the budget is
    cut to the remaining room when more than ``MIN_REMAINING_CHARS`` are left,
    and later files are dropped.

    Args:
        files: Files of the base snapshot
        selected_file_path: File the user has open, if any
        max_context_files: Plan limit on files in context
        max_chars_per_file: Character limit for any single file
        max_total_chars: Character budget across all context files

    Returns:
        ProjectContext with byte totals reflecting any trimming
    """
    selected = None
    others = []
    for f in files:
        if selected_file_path and f.path == selected_file_path:
            selected = f
        else:
            others.append(f)
    others.sort(key=lambda f: _priority(f.path))

    if max_context_files is not None:
        room = max(0, max_context_files - (1 if selected else 0))
        others = others[:room]

    total = 0
    if selected is not None:
        selected = ProjectFile(selected.path, truncate_content(selected.content, max_chars_per_file))
        total = len(selected.content)

    kept = []
    for f in others:
        content = truncate_content(f.content, max_chars_per_file)
        if total + len(content) > max_total_chars:
            remaining = max_total_chars - total
            if remaining > MIN_REMAINING_CHARS:
                kept.append(ProjectFile(f.path, truncate_content(content, remaining)))
            break
        kept.append(ProjectFile(f.path, content))
        total += len(content)

    return ProjectContext(
        selected_file=selected,
        essential_files=kept,
        file_list=sorted(f.path for f in files),
    )


SYSTEM_PROMPT_TEMPLATE = """You are an expert web developer editing a Next.js project.
Make changes only through the provided tools. Keep edits minimal and consistent
with the existing code style. Prefer apply_patch for small changes to existing
files and update_file for rewrites.

Project files:
{file_list}
{selected}
Context files:
{context_files}
"""


def _render_file(f: ProjectFile) -> str:
    return f"--- {f.path} ---\n{f.content}\n"


def get_system_prompt(context: ProjectContext) -> str:
    selected = ""
    if context.selected_file is not None:
        selected = f"\nThe user is looking at {context.selected_file.path}:\n" + _render_file(
            context.selected_file
        )
    return SYSTEM_PROMPT_TEMPLATE.format(
        file_list="\n".join(f"- {path}" for path in context.file_list) or "(empty project)",
        selected=selected,
        context_files="".join(_render_file(f) for f in context.essential_files) or "(none)\n",
    )
