"""Files and repository layout injected into each user turn."""

from pathlib import Path

from mentis.logging import get_logger

log = get_logger(__name__)

DEFAULT_IGNORE = {".git", "node_modules", "dist", "coverage", ".DS_Store", "__pycache__", ".venv"}


class RepoMapper:
    """Render a directory as an indented tree, directories first."""

    def __init__(self, root: Path | str, ignore: set[str] | list[str] | None = None):
        self.root = Path(root)
        self.ignore = set(DEFAULT_IGNORE if ignore is None else ignore)

    def generate_tree(self) -> str:
        return self._walk(self.root, "")

    def _walk(self, current: Path, indent: str) -> str:
        try:
            entries = [entry for entry in current.iterdir() if entry.name not in self.ignore]
        except OSError as e:
            return f"{indent}Error reading directory: {e}\n"

        entries.sort(key=lambda entry: (not entry.is_dir(), entry.name.lower()))
        lines: list[str] = []
        for index, entry in enumerate(entries):
            is_last = index == len(entries) - 1
            prefix = "└── " if is_last else "├── "
            is_dir = entry.is_dir() and not entry.is_symlink()
            lines.append(f"{indent}{prefix}{entry.name}{'/' if is_dir else ''}\n")
            if is_dir:
                lines.append(self._walk(entry, indent + ("    " if is_last else "│   ")))
        return "".join(lines)


class ContextManager:
    """Tracks files the user pinned into the conversation."""

    def __init__(self, root: Path | str | None = None, ignore: list[str] | None = None):
        self.root = Path(root) if root is not None else Path.cwd()
        self.mapper = RepoMapper(self.root, ignore)
        self._files: dict[Path, str] = {}

    def _resolve(self, file_path: str) -> Path:
        path = Path(file_path).expanduser()
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    def add_file(self, file_path: str) -> str:
        """Read ``file_path`` into the context; returns a status line."""
        path = self._resolve(file_path)
        if not path.is_file():
            return f"Error adding file: File not found: {file_path}"
        try:
            self._files[path] = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return f"Error adding file: {e}"
        log.info("File added to context", path=str(path))
        return f"Added {file_path} to context."

    def remove_file(self, file_path: str) -> str:
        path = self._resolve(file_path)
        if self._files.pop(path, None) is None:
            return f"File not in context: {file_path}"
        return f"Removed {file_path} from context."

    def clear(self) -> None:
        self._files.clear()

    @property
    def files(self) -> list[str]:
        return [str(path) for path in self._files]

    def get_context_string(self) -> str:
        context = f"Repository Structure:\n{self.mapper.generate_tree()}\n\n"
        if self._files:
            context += "Current File Context:\n\n"
            for path, content in self._files.items():
                context += f"--- File: {path.name} ---\n{content}\n\n"
        return context
