"""
Technology Detector: infer a repository's stack from its manifest.

Detection is a table of filename / path predicates. Unknown files are
ignored; the result is sorted and deduplicated so it is stable for a
given manifest. Rules use these tags to decide whether they apply.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


def _name_in(*names: str) -> Callable[[str, str], bool]:
    lowered = {n.lower() for n in names}
    return lambda path, name: name.lower() in lowered


def _name_startswith(*prefixes: str) -> Callable[[str, str], bool]:
    return lambda path, name: name.lower().startswith(prefixes)


def _name_endswith(*suffixes: str) -> Callable[[str, str], bool]:
    return lambda path, name: name.lower().endswith(suffixes)


def _path_segment(*segments: str) -> Callable[[str, str], bool]:
    def _match(path: str, name: str) -> bool:
        parts = path.lower().split("/")[:-1]
        return any(seg in parts for seg in segments)
    return _match


def _path_startswith(prefix: str) -> Callable[[str, str], bool]:
    return lambda path, name: path.lower().startswith(prefix) or f"/{prefix}" in path.lower()


# (technology tag, predicate(relative_path, file_name))
TECHNOLOGY_RULES: list[tuple[str, Callable[[str, str], bool]]] = [
    ("node", _name_in("package.json")),
    ("python", _name_in("requirements.txt", "pyproject.toml", "Pipfile", "setup.py")),
    ("go", _name_in("go.mod")),
    ("rust", _name_in("Cargo.toml")),
    ("java", _name_in("pom.xml", "build.gradle", "build.gradle.kts")),
    ("ruby", _name_in("Gemfile")),
    ("php", _name_in("composer.json")),
    ("dotnet", _name_endswith(".csproj")),
    ("docker", _name_startswith("dockerfile", "docker-compose")),
    ("terraform", _name_endswith(".tf")),
    ("kubernetes", _path_segment("k8s", "kubernetes")),
    ("kubernetes", _name_in("Chart.yaml")),
    ("github_actions", _path_startswith(".github/workflows/")),
    ("gitlab_ci", _name_in(".gitlab-ci.yml")),
    ("jenkins", _name_in("Jenkinsfile")),
    ("circleci", _path_segment(".circleci")),
]


def detect_technologies(paths: Iterable[str]) -> list[str]:
    """Return the sorted, deduplicated technology tags for the given relative paths."""
    found: set[str] = set()
    for path in paths:
        name = posixpath.basename(path)
        for tag, predicate in TECHNOLOGY_RULES:
            if tag not in found and predicate(path, name):
                found.add(tag)
    technologies = sorted(found)
    logger.debug("Detected technologies: %s", technologies)
    return technologies
