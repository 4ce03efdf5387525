"""Extract embedded images from folders of PDFs and sort them by colour.

For every directory block in the parameters file this utility runs the
configured extraction backend on each top-level PDF, writing the images to
`<dest>/<pdf stem>/`, and then sorts them:

* small page components (logos, bullets, rules) go to `Small/` or are deleted,
* grayscale and bilevel images go to `Grayscale/`,
* colour images stay in the PDF's folder.

With `remove_duplicates: true` an image whose SHA-1 digest and size match an
image already kept during the run is deleted. Each run writes a timestamped
log plus a JSONL summary to `Logs/`.

Example:

    python -m pdf_image_sorter.extract_images --parameters Parameters.txt

    # historical "delete small images" profile
    python -m pdf_image_sorter.extract_images --small-threshold 100 --small-action delete

Requirements:
    pip install pillow pymupdf
    poppler-utils (pdfimages) unless --backend pymupdf is used
"""

from __future__ import annotations

import argparse
import json
import logging
import shutil
import sys
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

try:  # pragma: no cover - import fallbacks for script vs package execution
    from . import color_classifier, dup_finder, parameters, pdfimages
except ImportError:  # pragma: no cover
    import color_classifier  # type: ignore
    import dup_finder  # type: ignore
    import parameters  # type: ignore
    import pdfimages  # type: ignore


DEFAULT_LOG_DIR = Path("Logs")
SMALL_DIR_NAME = "Small"
GRAYSCALE_DIR_NAME = "Grayscale"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract images from PDFs and sort them by colour")
    parser.add_argument("--parameters", type=Path, default=parameters.DEFAULT_PARAMETERS_PATH,
                        help="Parameters file (a template is written if it does not exist)")
    parser.add_argument("--log-dir", type=Path, default=DEFAULT_LOG_DIR,
                        help="Directory to store run logs and the JSONL summary")
    parser.add_argument("--small-threshold", type=int, default=None,
                        help="Images narrower and shorter than this (px) count as small")
    parser.add_argument("--small-action", choices=parameters.SMALL_ACTIONS, default=None,
                        help="archive: move small images to Small/, delete: remove them")
    parser.add_argument("--remove-duplicates", action="store_true",
                        help="Delete images whose hash and size match one already kept in this run")
    parser.add_argument("--backend", choices=parameters.BACKENDS, default=None,
                        help="Extraction backend (overrides extraction_backend)")
    return parser.parse_args(argv)


def configure_logging(log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = log_dir / f"run_{timestamp}.log"
    handlers = [logging.StreamHandler(sys.stdout),
                logging.FileHandler(log_path, encoding="utf-8")]
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        handlers=handlers,
    )
    logging.info("Logging to %s", log_path)
    return log_path


@dataclass
class ExtractionResult:
    pdf: str
    status: str
    images: int = 0
    color: int = 0
    grayscale: int = 0
    small: int = 0
    duplicates: int = 0
    failed: int = 0
    message: str = ""


def apply_overrides(params: parameters.RunParameters, args: argparse.Namespace) -> parameters.RunParameters:
    if args.small_threshold is not None:
        params.sort_options.small_threshold = args.small_threshold
    if args.small_action is not None:
        params.sort_options.small_action = args.small_action
    if args.remove_duplicates:
        params.sort_options.remove_duplicates = True
    if args.backend is not None:
        params.backend = args.backend
    return params


def validate_job(job: parameters.DirectoryJob) -> Optional[str]:
    if not Path(job.source_dir).is_dir():
        return f"Source directory not found: {job.source_dir}"
    if not job.dest_dir or not Path(job.dest_dir).is_absolute():
        return f"Invalid dest directory path: {job.dest_dir}"
    if any(not name for name in job.excluded_names):
        return "At least one excluded file name is empty."
    return None


def iter_pdf_files(source_dir: Path) -> Iterable[Path]:
    for path in sorted(source_dir.iterdir()):
        if path.is_file() and path.suffix.lower() == ".pdf":
            yield path


def is_excluded(pdf_path: Path, excluded_names: Sequence[str]) -> bool:
    name = pdf_path.name.casefold()
    return any(name == excluded.casefold() for excluded in excluded_names)


def output_name(image_path: Path, prefix: str = pdfimages.DEFAULT_PREFIX) -> str:
    return image_path.name.replace(f"{prefix}-", "")


def move_into(image_path: Path, folder: Path, name: str) -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    target = folder / name
    image_path.replace(target)
    return target


def sort_image(image_path: Path, pdf_dir: Path, options: parameters.SortOptions,
               finder: dup_finder.DupFinder, result: ExtractionResult) -> None:
    new_name = output_name(image_path)

    file_hash: Optional[str] = None
    if options.remove_duplicates:
        try:
            file_hash = dup_finder.compute_hash(image_path)
        except dup_finder.HashError as exc:
            logging.error("%s", exc)
        else:
            if finder.contains(file_hash, image_path):
                image_path.unlink()
                result.duplicates += 1
                logging.info("Duplicate removed: %s", new_name)
                return

    try:
        category = color_classifier.classify_file(image_path, options.small_threshold)
    except color_classifier.ImageDecodeError as exc:
        result.failed += 1
        logging.error("%s", exc)
        return

    if category is color_classifier.ImageCategory.SMALL:
        result.small += 1
        if options.small_action == "delete":
            image_path.unlink()
            return
        target = move_into(image_path, pdf_dir / SMALL_DIR_NAME, new_name)
    elif category is color_classifier.ImageCategory.GRAYSCALE:
        result.grayscale += 1
        target = move_into(image_path, pdf_dir / GRAYSCALE_DIR_NAME, new_name)
    else:
        result.color += 1
        target = move_into(image_path, pdf_dir, new_name)

    if file_hash is not None:
        finder.add(file_hash, target)


def sort_extracted_images(pdf_dir: Path, options: parameters.SortOptions, finder: dup_finder.DupFinder,
                          result: ExtractionResult) -> None:
    image_paths = sorted(path for path in pdf_dir.iterdir() if path.is_file())
    result.images = len(image_paths)
    for image_path in image_paths:
        try:
            sort_image(image_path, pdf_dir, options, finder, result)
        except OSError as exc:
            result.failed += 1
            logging.error("Failed to sort %s: %s", image_path.name, exc)


def process_pdf(pdf_path: Path, dest_dir: Path, params: parameters.RunParameters,
                finder: dup_finder.DupFinder) -> ExtractionResult:
    result = ExtractionResult(pdf=pdf_path.name, status="ok")
    pdf_dir = dest_dir / pdf_path.stem
    if pdf_dir.exists():
        logging.info("Images already extracted for: %s", pdf_path.name)
        result.status = "skipped"
        result.message = "already extracted"
        return result

    logging.info("Extracting images for: %s", pdf_path.name)
    try:
        pdf_dir.mkdir(parents=True)
        pdfimages.extract_images(params.backend, pdf_path, pdf_dir, params.pdfimages_path)
        sort_extracted_images(pdf_dir, params.sort_options, finder, result)
    except pdfimages.ExtractionError as exc:
        logging.error("%s", exc)
        if not any(pdf_dir.iterdir()):
            pdf_dir.rmdir()
        result.status = "error"
        result.message = str(exc)
    except Exception as exc:  # pylint: disable=broad-except
        logging.exception("Failed to process %s", pdf_path)
        result.status = "error"
        result.message = str(exc)
    else:
        logging.info("%s: %s colour, %s grayscale, %s small, %s duplicate, %s failed",
                     pdf_path.name, result.color, result.grayscale, result.small,
                     result.duplicates, result.failed)
    return result


def prepare_dest(dest_dir: Path, reextract: bool) -> bool:
    if dest_dir.exists() and reextract:
        try:
            shutil.rmtree(dest_dir)
        except OSError as exc:
            logging.error("Failed to delete: %s (%s)", dest_dir, exc)
            return False
    dest_dir.mkdir(parents=True, exist_ok=True)
    return True


def run_job(job: parameters.DirectoryJob, params: parameters.RunParameters,
            finder: dup_finder.DupFinder) -> List[ExtractionResult]:
    problem = validate_job(job)
    if problem:
        logging.warning("%s", problem)
        return []

    source_dir = Path(job.source_dir)
    dest_dir = Path(job.dest_dir)
    logging.info("Source directory: %s", source_dir)
    logging.info("Dest directory: %s", dest_dir)
    if job.excluded_names:
        logging.info("Excluded file names: %s", ", ".join(job.excluded_names))

    if not prepare_dest(dest_dir, params.reextract):
        return []

    results: List[ExtractionResult] = []
    for pdf_path in iter_pdf_files(source_dir):
        if is_excluded(pdf_path, job.excluded_names):
            logging.info("Images extraction skipped for: %s", pdf_path.name)
            results.append(ExtractionResult(pdf=pdf_path.name, status="skipped", message="excluded"))
            continue
        results.append(process_pdf(pdf_path, dest_dir, params, finder))
    return results


def run(params: parameters.RunParameters) -> List[ExtractionResult]:
    finder = dup_finder.DupFinder()
    results: List[ExtractionResult] = []
    for job in params.jobs:
        results.extend(run_job(job, params, finder))
    return results


def write_jsonl(results: Iterable[ExtractionResult], log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    jsonl_path = log_dir / f"run_{timestamp}.jsonl"
    with jsonl_path.open("w", encoding="utf-8") as fh:
        for result in results:
            fh.write(json.dumps(asdict(result), ensure_ascii=False) + "\n")
    return jsonl_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    log_path = configure_logging(args.log_dir)
    try:
        if not args.parameters.exists():
            parameters.write_template(args.parameters)
            logging.info("Parameters file created: %s", args.parameters)
            return 0

        params = apply_overrides(parameters.load_parameters(args.parameters), args)
        if params.backend == "pdfimages" and pdfimages.resolve_executable(params.pdfimages_path) is None:
            logging.error("pdfimages not found: %s", params.pdfimages_path or "<empty>")
            return 1

        results = run(params)
        jsonl_path = write_jsonl(results, args.log_dir)
        ok = sum(1 for r in results if r.status == "ok")
        skipped = sum(1 for r in results if r.status == "skipped")
        err = sum(1 for r in results if r.status == "error")
        logging.info("Extraction complete | ok=%s skipped=%s error=%s | log=%s | jsonl=%s",
                     ok, skipped, err, log_path, jsonl_path)
        return 0
    except parameters.ParameterError as exc:
        logging.error("Invalid parameters file %s: %s", args.parameters, exc)
        return 1
    except Exception:  # pylint: disable=broad-except
        logging.exception("Unexpected failure")
        return 1
    finally:
        # Marks a run that finished without crashing the interpreter.
        logging.info("End of log.")


if __name__ == "__main__":
    sys.exit(main())
