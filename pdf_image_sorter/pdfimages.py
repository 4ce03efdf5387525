"""Extraction backends that dump the embedded images of one PDF.

Both backends write files named ``<prefix>-NNN.<ext>`` into the output
directory, matching what poppler's ``pdfimages`` produces:

* ``pdfimages`` (default) shells out to the poppler utility with ``-j`` so
  DCT streams are written as JPEG and everything else as PNM.
* ``pymupdf`` reads the image XObjects page by page through PyMuPDF. Useful
  when poppler is not installed.

Dependencies:
    pip install pymupdf
    poppler-utils (for the pdfimages backend)
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

import fitz  # PyMuPDF


DEFAULT_PREFIX = "temp"


class ExtractionError(RuntimeError):
    """Raised when the extraction backend cannot run for a PDF."""


def resolve_executable(value: str) -> Optional[Path]:
    if not value:
        return None
    candidate = Path(value)
    if candidate.is_file():
        return candidate
    found = shutil.which(value)
    return Path(found) if found else None


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, errors="replace")


def log_process_output(result: subprocess.CompletedProcess) -> None:
    for line in (result.stdout or "").splitlines():
        if line.strip():
            logging.info("%s", line)
    for line in (result.stderr or "").splitlines():
        if line.strip():
            logging.error("%s", line)


def extract_with_pdfimages(executable: Path, pdf_path: Path, output_dir: Path,
                           prefix: str = DEFAULT_PREFIX) -> int:
    """Run ``pdfimages -j`` and return the process exit code.

    A non-zero exit code is logged but not raised: pdfimages reports broken
    streams that way while still writing every image it could decode.
    """
    # -list would output too much redundant info
    cmd = [str(executable), "-j", str(pdf_path), str(output_dir / prefix)]
    try:
        result = _run(cmd)
    except OSError as exc:
        raise ExtractionError(f"Failed to start {executable}: {exc}") from exc
    log_process_output(result)
    if result.returncode != 0:
        logging.warning("pdfimages exited with code %s for %s", result.returncode, pdf_path.name)
    return result.returncode


def extract_with_pymupdf(pdf_path: Path, output_dir: Path, prefix: str = DEFAULT_PREFIX) -> int:
    """Write every embedded image of ``pdf_path`` and return how many were saved.

    Streams PyMuPDF cannot decode are logged and skipped so the images that
    were written still get sorted.
    """
    count = 0
    try:
        doc = fitz.open(pdf_path)
    except Exception as exc:  # pylint: disable=broad-except
        raise ExtractionError(f"PyMuPDF cannot open {pdf_path}: {exc}") from exc
    try:
        for page_index, page in enumerate(doc, start=1):
            for img in page.get_images(full=True):
                xref = img[0]
                try:
                    image_info = doc.extract_image(xref)
                except Exception as exc:  # pylint: disable=broad-except
                    logging.warning("Cannot extract image (xref=%s) on page %s of %s: %s",
                                    xref, page_index, pdf_path.name, exc)
                    continue
                image_bytes = image_info.get("image") if image_info else None
                if not image_bytes:
                    logging.warning("Missing or empty image payload (xref=%s) on page %s of %s",
                                    xref, page_index, pdf_path.name)
                    continue
                ext = (image_info.get("ext") or "png").lower()
                out_path = output_dir / f"{prefix}-{count:03d}.{ext}"
                with out_path.open("wb") as fh:
                    fh.write(image_bytes)
                count += 1
    finally:
        doc.close()
    return count


def extract_images(backend: str, pdf_path: Path, output_dir: Path,
                   pdfimages_path: str = "", prefix: str = DEFAULT_PREFIX) -> None:
    if backend == "pymupdf":
        extract_with_pymupdf(pdf_path, output_dir, prefix)
        return
    executable = resolve_executable(pdfimages_path)
    if executable is None:
        raise ExtractionError(f"pdfimages not found: {pdfimages_path or '<empty>'}")
    extract_with_pdfimages(executable, pdf_path, output_dir, prefix)
