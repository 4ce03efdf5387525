from __future__ import annotations

import json
import subprocess

import fitz  # PyMuPDF
import numpy as np
from PIL import Image

from pdf_image_sorter import dup_finder, extract_images, pdfimages
from pdf_image_sorter.dup_finder import DupFinder
from pdf_image_sorter.parameters import DirectoryJob, RunParameters, SortOptions


RED = (220, 30, 30)


def write_color(path, size=(300, 300)):
    array = np.zeros((size[1], size[0], 3), dtype=np.uint8)
    array[:, :] = RED
    Image.fromarray(array).save(path)
    return path


def write_gray(path, size=(300, 300)):
    Image.new("L", size, 120).save(path)
    return path


def write_fake_pdf(path):
    path.write_bytes(b"%PDF-1.4\n%fake\n")
    return path


def build_result(name="doc.pdf"):
    return extract_images.ExtractionResult(pdf=name, status="ok")


def fake_extractor(calls):
    def _extract(backend, pdf_path, output_dir, pdfimages_path="", prefix="temp"):
        calls.append(pdf_path.name)
        write_color(output_dir / f"{prefix}-000.png")
        write_gray(output_dir / f"{prefix}-001.png")
        write_color(output_dir / f"{prefix}-002.png", size=(40, 40))
    return _extract


def build_params(source, dest, reextract=False, **options):
    return RunParameters(
        pdfimages_path="pdfimages",
        reextract=reextract,
        sort_options=SortOptions(**options),
        jobs=[DirectoryJob(source_dir=str(source), dest_dir=str(dest), excluded_names=["Skip.PDF"])],
    )


def test_sort_archives_small_and_grayscale(tmp_path):
    write_color(tmp_path / "temp-000.png")
    write_gray(tmp_path / "temp-001.png")
    write_color(tmp_path / "temp-002.png", size=(200, 100))
    result = build_result()

    extract_images.sort_extracted_images(tmp_path, SortOptions(), DupFinder(), result)

    assert (tmp_path / "000.png").exists()
    assert (tmp_path / "Grayscale" / "001.png").exists()
    assert (tmp_path / "Small" / "002.png").exists()
    assert not list(tmp_path.glob("temp-*"))
    assert (result.images, result.color, result.grayscale, result.small) == (3, 1, 1, 1)


def test_sort_delete_profile_removes_small_images(tmp_path):
    write_color(tmp_path / "temp-000.png", size=(150, 150))
    write_color(tmp_path / "temp-001.png", size=(60, 60))
    result = build_result()
    options = SortOptions(small_threshold=100, small_action="delete")

    extract_images.sort_extracted_images(tmp_path, options, DupFinder(), result)

    assert (tmp_path / "000.png").exists()
    assert not (tmp_path / "temp-001.png").exists()
    assert not (tmp_path / "Small").exists()
    assert result.small == 1


def test_undecodable_image_is_left_untouched(tmp_path):
    broken = tmp_path / "temp-000.jpg"
    broken.write_bytes(b"garbage")
    result = build_result()

    extract_images.sort_extracted_images(tmp_path, SortOptions(), DupFinder(), result)

    assert broken.exists()
    assert result.failed == 1


def test_duplicates_are_removed_across_pdfs(tmp_path):
    first_dir = tmp_path / "first"
    second_dir = tmp_path / "second"
    first_dir.mkdir()
    second_dir.mkdir()
    write_color(first_dir / "temp-000.png")
    write_color(first_dir / "temp-001.png")
    write_color(second_dir / "temp-000.png")
    write_gray(second_dir / "temp-001.png")

    finder = DupFinder()
    options = SortOptions(remove_duplicates=True)
    first = build_result("first.pdf")
    second = build_result("second.pdf")
    extract_images.sort_extracted_images(first_dir, options, finder, first)
    extract_images.sort_extracted_images(second_dir, options, finder, second)

    assert (first_dir / "000.png").exists()
    assert not (first_dir / "001.png").exists()
    assert not (second_dir / "000.png").exists()
    assert (second_dir / "Grayscale" / "001.png").exists()
    assert (first.duplicates, second.duplicates) == (1, 1)
    assert len(finder) == 2


def test_duplicates_kept_when_disabled(tmp_path):
    write_color(tmp_path / "temp-000.png")
    write_color(tmp_path / "temp-001.png")
    result = build_result()

    extract_images.sort_extracted_images(tmp_path, SortOptions(), DupFinder(), result)

    assert (tmp_path / "000.png").exists()
    assert (tmp_path / "001.png").exists()
    assert result.duplicates == 0


def test_validate_job(tmp_path):
    assert "Source directory not found" in extract_images.validate_job(
        DirectoryJob(source_dir=str(tmp_path / "missing"), dest_dir=str(tmp_path)))
    assert "Invalid dest directory path" in extract_images.validate_job(
        DirectoryJob(source_dir=str(tmp_path), dest_dir="relative/out"))
    assert "excluded file name is empty" in extract_images.validate_job(
        DirectoryJob(source_dir=str(tmp_path), dest_dir=str(tmp_path / "out"), excluded_names=[""]))
    assert extract_images.validate_job(DirectoryJob(source_dir=str(tmp_path), dest_dir=str(tmp_path / "out"))) is None


def test_run_extracts_sorts_and_skips(tmp_path, monkeypatch):
    source = tmp_path / "pdfs"
    source.mkdir()
    write_fake_pdf(source / "alpha.pdf")
    write_fake_pdf(source / "beta.PDF")
    write_fake_pdf(source / "skip.pdf")
    (source / "notes.txt").write_text("not a pdf", encoding="utf-8")
    dest = tmp_path / "images"
    calls = []
    monkeypatch.setattr(pdfimages, "extract_images", fake_extractor(calls))

    results = extract_images.run(build_params(source, dest))

    assert calls == ["alpha.pdf", "beta.PDF"]
    assert [(r.pdf, r.status) for r in results] == [
        ("alpha.pdf", "ok"), ("beta.PDF", "ok"), ("skip.pdf", "skipped"),
    ]
    assert result.color + result.grayscale == 1
    assert len(seen) == 2
    assert (dest / "alpha" / "Grayscale" / "001.png").exists()
    assert (dest / "beta" / "Small" / "002.png").exists()
    assert not (dest / "skip").exists()

    rerun = extract_images.run(build_params(source, dest))
    assert calls == ["alpha.pdf", "beta.PDF"]
    assert [r.message for r in rerun] == ["already extracted", "already extracted", "excluded"]

    extract_images.run(build_params(source, dest, reextract=True))
    assert calls == ["alpha.pdf", "beta.PDF", "alpha.pdf", "beta.PDF"]


def test_extraction_error_is_recorded(tmp_path, monkeypatch):
    source = tmp_path / "pdfs"
    source.mkdir()
    write_fake_pdf(source / "alpha.pdf")
    dest = tmp_path / "images"

    def failing(*args, **kwargs):
        raise pdfimages.ExtractionError("pdfimages not found: nowhere")

    monkeypatch.setattr(pdfimages, "extract_images", failing)
    results = extract_images.run(build_params(source, dest))

    assert results[0].status == "error"
    assert "not found" in results[0].message
    assert not (dest / "alpha").exists()


def test_pdfimages_command_line(tmp_path, monkeypatch):
    executable = tmp_path / "pdfimages"
    executable.write_text("", encoding="utf-8")
    seen = []

    def fake_run(cmd):
        seen.append(cmd)
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Syntax Error: broken stream\n")

    monkeypatch.setattr(pdfimages, "_run", fake_run)
    code = pdfimages.extract_with_pdfimages(executable, tmp_path / "a.pdf", tmp_path / "out")

    assert code == 1
    assert seen == [[str(executable), "-j", str(tmp_path / "a.pdf"), str(tmp_path / "out" / "temp")]]


def test_resolve_executable(tmp_path):
    executable = tmp_path / "pdfimages.exe"
    executable.write_text("", encoding="utf-8")
    assert pdfimages.resolve_executable(str(executable)) == executable
    assert pdfimages.resolve_executable("") is None
    assert pdfimages.resolve_executable(str(tmp_path / "missing.exe")) is None


def test_pymupdf_backend_writes_prefixed_images(tmp_path):
    image_path = write_color(tmp_path / "figure.png")
    pdf_path = tmp_path / "doc.pdf"
    doc = fitz.open()
    page = doc.new_page()
    page.insert_image(fitz.Rect(0, 0, 200, 200), filename=str(image_path))
    doc.save(str(pdf_path))
    doc.close()
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    count = pdfimages.extract_with_pymupdf(pdf_path, out_dir)

    assert count == 1
    written = sorted(out_dir.glob("temp-*"))
    assert [p.stem for p in written] == ["temp-000"]


def test_main_writes_template_when_missing(tmp_path):
    params_path = tmp_path / "Parameters.txt"
    code = extract_images.main(["--parameters", str(params_path), "--log-dir", str(tmp_path / "Logs")])
    assert code == 0
    assert "pdfimages_exe_path:" in params_path.read_text(encoding="utf-8")


def test_main_rejects_missing_pdfimages(tmp_path):
    params_path = tmp_path / "Parameters.txt"
    params_path.write_text(
        f"pdfimages_exe_path: {tmp_path / 'missing.exe'}\nreextract_images: false\n",
        encoding="utf-8",
    )
    code = extract_images.main(["--parameters", str(params_path), "--log-dir", str(tmp_path / "Logs")])
    assert code == 1


def test_main_runs_with_overrides_and_writes_summary(tmp_path, monkeypatch):
    source = tmp_path / "pdfs"
    source.mkdir()
    write_fake_pdf(source / "alpha.pdf")
    dest = tmp_path / "images"
    params_path = tmp_path / "Parameters.txt"
    params_path.write_text(
        "reextract_images: false\n"
        "extraction_backend: pymupdf\n"
        f"source_directory_path: {source}\n"
        f"dest_directory_path: {dest}\n",
        encoding="utf-8",
    )
    calls = []
    monkeypatch.setattr(pdfimages, "extract_images", fake_extractor(calls))
    log_dir = tmp_path / "Logs"

    code = extract_images.main([
        "--parameters", str(params_path),
        "--log-dir", str(log_dir),
        "--small-threshold", "30",
    ])

    assert code == 0
    assert calls == ["alpha.pdf"]
    assert (dest / "alpha" / "002.png").exists()
    summaries = list(log_dir.glob("*.jsonl"))
    assert len(summaries) == 1
    record = json.loads(summaries[0].read_text(encoding="utf-8").splitlines()[0])
    assert record["pdf"] == "alpha.pdf"
    assert record["color"] == 2


def test_main_reports_invalid_parameters(tmp_path):
    params_path = tmp_path / "Parameters.txt"
    params_path.write_text("pdfimages_exe_path: pdfimages\n", encoding="utf-8")
    code = extract_images.main(["--parameters", str(params_path), "--log-dir", str(tmp_path / "Logs")])
    assert code == 1


def build_two_image_pdf(tmp_path):
    first = write_color(tmp_path / "figure_a.png")
    second = write_gray(tmp_path / "figure_b.png")
    pdf_path = tmp_path / "alpha.pdf"
    doc = fitz.open()
    page = doc.new_page()
    page.insert_image(fitz.Rect(0, 0, 200, 200), filename=str(first))
    page.insert_image(fitz.Rect(0, 300, 200, 500), filename=str(second))
    doc.save(str(pdf_path))
    doc.close()
    return pdf_path


def test_pymupdf_skips_unreadable_stream_and_sorts_the_rest(tmp_path, monkeypatch):
    source = tmp_path / "pdfs"
    source.mkdir()
    pdf_path = build_two_image_pdf(source)
    for helper in ("figure_a.png", "figure_b.png"):
        (source / helper).unlink()
    dest = tmp_path / "images"
    dest.mkdir()

    original = fitz.Document.extract_image
    seen = []

    def flaky_extract(self, xref):
        seen.append(xref)
        if len(seen) == 2:
            raise RuntimeError("bad stream")
        return original(self, xref)

    monkeypatch.setattr(fitz.Document, "extract_image", flaky_extract)
    params = build_params(source, dest)
    params.backend = "pymupdf"

    result = extract_images.process_pdf(pdf_path, dest, params, DupFinder())

    assert result.status == "ok"
    assert result.images == 1
    assert not list((dest / "alpha").glob("temp-*"))
    assert result.color + result.grayscale == 1
    assert len(seen) == 2


def test_hash_failure_still_classifies_without_dedup(tmp_path, monkeypatch):
    write_color(tmp_path / "temp-000.png")
    write_gray(tmp_path / "temp-001.png")

    def unreadable(path):
        raise dup_finder.HashError(13, f"Cannot hash {path}: Permission denied")

    monkeypatch.setattr(dup_finder, "compute_hash", unreadable)
    finder = DupFinder()
    result = build_result()

    extract_images.sort_extracted_images(tmp_path, SortOptions(remove_duplicates=True), finder, result)

    assert (tmp_path / "000.png").exists()
    assert (tmp_path / "Grayscale" / "001.png").exists()
    assert (result.color, result.grayscale, result.failed, result.duplicates) == (1, 1, 0, 0)
    assert len(finder) == 0


def test_output_folder_failure_is_recorded_per_pdf(tmp_path):
    pdf_path = write_fake_pdf(tmp_path / "alpha.pdf")
    blocked = tmp_path / "not_a_dir"
    blocked.write_text("", encoding="utf-8")

    result = extract_images.process_pdf(pdf_path, blocked, build_params(tmp_path, blocked), DupFinder())

    assert result.status == "error"
    assert result.message
