"""Read the `Parameters.txt` file that drives an extraction run.

The file is a flat list of ``key: value`` lines. Global keys configure the
run; every ``source_directory_path`` line opens a new directory block that
collects the ``dest_directory_path`` and ``excluded_file_name`` lines that
follow it. Blank lines and ``//`` comments are ignored.

Example:

    pdfimages_exe_path: C:\\Tools\\poppler\\bin\\pdfimages.exe
    reextract_images: false
    small_image_threshold: 250
    small_image_action: archive

    // Directory #1
    source_directory_path: D:\\Scans
    dest_directory_path: D:\\Scans\\Images
    excluded_file_name: cover.pdf
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

try:  # pragma: no cover - script/package dual usage
    from .color_classifier import DEFAULT_SMALL_THRESHOLD
except ImportError:  # pragma: no cover
    from color_classifier import DEFAULT_SMALL_THRESHOLD  # type: ignore


DEFAULT_PARAMETERS_PATH = Path("Parameters.txt")

SMALL_ACTIONS = ("archive", "delete")
BACKENDS = ("pdfimages", "pymupdf")

KEY_PDFIMAGES = "pdfimages_exe_path"
KEY_REEXTRACT = "reextract_images"
KEY_SMALL_THRESHOLD = "small_image_threshold"
KEY_SMALL_ACTION = "small_image_action"
KEY_REMOVE_DUPLICATES = "remove_duplicates"
KEY_BACKEND = "extraction_backend"
KEY_SOURCE = "source_directory_path"
KEY_DEST = "dest_directory_path"
KEY_EXCLUDED = "excluded_file_name"

GLOBAL_KEYS = (
    KEY_PDFIMAGES,
    KEY_REEXTRACT,
    KEY_SMALL_THRESHOLD,
    KEY_SMALL_ACTION,
    KEY_REMOVE_DUPLICATES,
    KEY_BACKEND,
)

TEMPLATE_LINES = [
    f"{KEY_PDFIMAGES}: ",
    f"{KEY_REEXTRACT}: false",
    f"{KEY_SMALL_THRESHOLD}: {DEFAULT_SMALL_THRESHOLD}",
    f"{KEY_SMALL_ACTION}: archive",
    f"{KEY_REMOVE_DUPLICATES}: false",
    "",
    "// Directory #1",
    f"{KEY_SOURCE}: ",
    f"{KEY_DEST}: ",
    f"{KEY_EXCLUDED}: ",
    "",
    "// Directory #2",
    f"{KEY_SOURCE}: ",
    f"{KEY_DEST}: ",
]


class ParameterError(ValueError):
    """Raised when the parameter file is missing a required field."""


@dataclass
class SortOptions:
    small_threshold: int = DEFAULT_SMALL_THRESHOLD
    small_action: str = "archive"
    remove_duplicates: bool = False


@dataclass
class DirectoryJob:
    source_dir: str
    dest_dir: str = ""
    excluded_names: List[str] = field(default_factory=list)


@dataclass
class RunParameters:
    pdfimages_path: str
    reextract: bool
    backend: str = "pdfimages"
    sort_options: SortOptions = field(default_factory=SortOptions)
    jobs: List[DirectoryJob] = field(default_factory=list)


def read_parameter_lines(path: Path) -> List[str]:
    lines: List[str] = []
    with path.open("r", encoding="utf-8-sig") as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith("//"):
                continue
            lines.append(line)
    return lines


def write_template(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(TEMPLATE_LINES) + "\n", encoding="utf-8")


def split_line(line: str) -> tuple[str, str]:
    key, sep, value = line.partition(":")
    if not sep:
        return line.strip(), ""
    return key.strip(), value.strip()


def parse_bool(key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ParameterError(f"{key} must be 'true' or 'false', got {value!r}")


def parse_choice(key: str, value: str, choices: Sequence[str]) -> str:
    lowered = value.lower()
    if lowered not in choices:
        raise ParameterError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return lowered


def collect_globals(lines: Iterable[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in lines:
        key, value = split_line(line)
        if key not in GLOBAL_KEYS:
            continue
        if key in values:
            raise ParameterError(f"{key} is defined more than once")
        values[key] = value
    return values


def collect_jobs(lines: Iterable[str]) -> List[DirectoryJob]:
    jobs: List[DirectoryJob] = []
    current: Optional[DirectoryJob] = None
    for line in lines:
        key, value = split_line(line)
        if key == KEY_SOURCE:
            current = DirectoryJob(source_dir=value)
            jobs.append(current)
        elif current is None:
            continue
        elif key == KEY_DEST:
            current.dest_dir = value
        elif key == KEY_EXCLUDED:
            current.excluded_names.append(value)
    return jobs


def parse_parameters(lines: Sequence[str]) -> RunParameters:
    values = collect_globals(lines)

    backend = parse_choice(KEY_BACKEND, values.get(KEY_BACKEND) or "pdfimages", BACKENDS)
    if backend == "pdfimages" and KEY_PDFIMAGES not in values:
        raise ParameterError(f"{KEY_PDFIMAGES} is missing")
    if KEY_REEXTRACT not in values:
        raise ParameterError(f"{KEY_REEXTRACT} is missing")

    threshold_raw = values.get(KEY_SMALL_THRESHOLD) or str(DEFAULT_SMALL_THRESHOLD)
    try:
        threshold = int(threshold_raw)
    except ValueError as exc:
        raise ParameterError(f"{KEY_SMALL_THRESHOLD} must be an integer, got {threshold_raw!r}") from exc

    options = SortOptions(
        small_threshold=threshold,
        small_action=parse_choice(KEY_SMALL_ACTION, values.get(KEY_SMALL_ACTION) or "archive", SMALL_ACTIONS),
        remove_duplicates=parse_bool(KEY_REMOVE_DUPLICATES, values.get(KEY_REMOVE_DUPLICATES) or "false"),
    )
    return RunParameters(
        pdfimages_path=values.get(KEY_PDFIMAGES, ""),
        reextract=parse_bool(KEY_REEXTRACT, values[KEY_REEXTRACT]),
        backend=backend,
        sort_options=options,
        jobs=collect_jobs(lines),
    )


def load_parameters(path: Path) -> RunParameters:
    return parse_parameters(read_parameter_lines(path))
