"""Classify raw listeners into process descriptors."""

from typing import Protocol

from portwatch.models import ProcessDescriptor, RawProcess

# Checked in order, first match wins.
PROCESS_GROUPS: list[tuple[str, tuple[str, ...]]] = [
    ("Node.js", ("node",)),
    ("Python", ("python",)),
    ("Java", ("java",)),
    ("Go", ("go ", "go-build")),
    ("Rust", ("rust", "cargo")),
    ("PHP", ("php",)),
    ("Ruby", ("ruby",)),
    ("Docker", ("docker",)),
    ("Web Server", ("nginx", "apache", "httpd", "caddy")),
    ("Database", ("postgres", "mysql", "redis", "mongod")),
]

PROJECT_KEYWORDS = ("project", "app", "service", "api", "frontend", "backend", "client", "server")
_PLACEHOLDER_SEGMENTS = {"", "~", "home", "Users"}

# (all substrings that must appear in the command line, label)
COMMAND_LINE_LABELS: list[tuple[tuple[str, ...], str]] = [
    (("node", "server"), "Node.js Server"),
    (("python", "app"), "Python App"),
    (("npm", "start"), "NPM Start"),
    (("yarn", "start"), "Yarn Start"),
    (("docker", "run"), "Docker Container"),
    (("java", "jar"), "Java Application"),
    (("rails", "server"), "Rails Server"),
    (("php", "serve"), "PHP Server"),
    (("cargo", "run"), "Rust Application"),
]

DIRECTORY_ROLES: list[tuple[tuple[str, ...], str]] = [
    (("frontend", "client"), "Frontend"),
    (("backend", "api"), "Backend"),
    (("database", "db"), "Database"),
    (("test", "spec"), "Test"),
]

GROUP_LABELS = {
    "Node.js": "Node.js Process",
    "Python": "Python Process",
    "Java": "Java Process",
    "Docker": "Docker Container",
    "Web Server": "Web Server",
    "Database": "Database Server",
}


class MetricsProvider(Protocol):
    def cpu_percent(self, pid: int) -> float | None: ...

    def memory(self, pid: int) -> tuple[int, float] | None: ...


def determine_process_group(name: str, command: str) -> str | None:
    """Map a process name/command onto a runtime family label."""
    name_lower = name.lower()
    command_lower = command.lower()
    if name_lower == "go":
        return "Go"
    for label, keywords in PROCESS_GROUPS:
        if any(k in name_lower or k in command_lower for k in keywords):
            return label
    return None


def extract_project_name(working_directory: str | None) -> str | None:
    """Derive a project name from the last informative path segment."""
    if not working_directory:
        return None
    parts = working_directory.replace("\\", "/").split("/")
    last = parts[-1]
    if last and last != "~":
        return last
    for part in reversed(parts):
        if part in _PLACEHOLDER_SEGMENTS:
            continue
        if any(keyword in part for keyword in PROJECT_KEYWORDS):
            return part
    return None


def enhance_display_name(
    name: str,
    command_line: str | None,
    working_directory: str | None,
    process_group: str | None,
) -> str:
    if command_line:
        for needles, label in COMMAND_LINE_LABELS:
            if all(needle in command_line for needle in needles):
                return label
        if command_line.split()[:2] == ["go", "run"]:
            return "Go Application"
    if working_directory:
        for needles, role in DIRECTORY_ROLES:
            if any(needle in working_directory for needle in needles):
                return f"{name} ({role})"
    if process_group:
        return GROUP_LABELS.get(process_group, name)
    return name


def classify(raw: RawProcess, metrics: MetricsProvider | None = None) -> ProcessDescriptor:
    """
    Enrich a raw listener with group, project, display name and metrics.

    Missing metrics (the process exited between enumeration and lookup) leave
    the metric fields unset.
    """
    group = determine_process_group(raw.name, raw.command)
    cpu = memory_bytes = memory_percent = None
    if metrics is not None:
        cpu = metrics.cpu_percent(raw.pid)
        memory = metrics.memory(raw.pid)
        if memory is not None:
            memory_bytes, memory_percent = memory

    return ProcessDescriptor(
        pid=raw.pid,
        port=raw.port,
        command=raw.command,
        name=raw.name,
        display_name=enhance_display_name(
            raw.name, raw.command_line, raw.working_directory, group
        ),
        container_id=raw.container_id,
        container_name=raw.container_name,
        command_line=raw.command_line,
        working_directory=raw.working_directory,
        process_group=group,
        project_name=extract_project_name(raw.working_directory),
        cpu_percent=cpu,
        memory_bytes=memory_bytes,
        memory_percent=memory_percent,
    )
