"""Interaction modes, active skills, and the confirmation policy."""

from dataclasses import dataclass, field
from enum import Enum

from mentis.tools.registry import Tool

PLAN_DIRECTIVE = (
    "\n[SYSTEM: You are in PLAN mode. Focus on high-level architecture, requirements analysis, "
    "and creating a sturdy plan. Do not write full code implementation yet, just scaffolds "
    "or pseudocode if needed.]"
)
BUILD_DIRECTIVE = (
    "\n[SYSTEM: You are in BUILD mode. Focus on implementing working code that solves "
    "the user request efficiently.]"
)

# Tool names as they appear in a skill's allowed-tools list.
SKILL_TOOL_NAMES: dict[str, str] = {
    "write_file": "Write",
    "read_file": "Read",
    "edit_file": "Edit",
    "search_files": "Grep",
    "list_dir": "ListDir",
    "run_shell": "RunShell",
    "web_search": "WebSearch",
    "git_status": "GitStatus",
    "git_diff": "GitDiff",
    "git_commit": "GitCommit",
    "git_push": "GitPush",
    "git_pull": "GitPull",
    "load_skill": "Read",
    "list_skills": "Read",
    "read_skill_file": "Read",
    "slash_command": "Read",
    "list_commands": "Read",
}


class AgentMode(str, Enum):
    PLAN = "plan"
    BUILD = "build"

    @property
    def directive(self) -> str:
        return PLAN_DIRECTIVE if self is AgentMode.PLAN else BUILD_DIRECTIVE


@dataclass
class ActiveSkill:
    """A skill the user activated for the current session.

    ``allowed_tools`` lists skill-style names (``Write``, ``RunShell``...);
    ``None`` means the skill does not restrict or pre-approve anything.
    """

    name: str
    instructions: str = ""
    allowed_tools: list[str] | None = None

    def allows(self, tool_name: str) -> bool:
        if not self.allowed_tools:
            return False
        mapped = SKILL_TOOL_NAMES.get(tool_name, tool_name)
        return mapped in self.allowed_tools or tool_name in self.allowed_tools


@dataclass
class SkillCatalog:
    """Skill and command text filled in by whatever loads skills from disk."""

    skills_context: str = ""
    commands_context: str = ""
    active: ActiveSkill | None = None


@dataclass
class ConfirmationPolicy:
    """Decides whether a tool call needs the user's approval."""

    auto_confirm: bool = False
    # Overrides each tool's own declaration when non-empty.
    require_confirmation: list[str] = field(default_factory=list)
    active_skill: ActiveSkill | None = None

    def requires_confirmation(self, tool: Tool) -> bool:
        if self.auto_confirm:
            return False
        if self.require_confirmation:
            needed = tool.name in self.require_confirmation
        else:
            needed = tool.requires_confirmation
        if needed and self.active_skill is not None and self.active_skill.allows(tool.name):
            return False
        return needed
