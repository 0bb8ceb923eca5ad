from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .utils import load_json, term_key


CONTRACT_FILES = ("result.json", "metrics.json", "errors.jsonl")


@dataclass
class ValidationReport:
    missing_contract_files: int = 0
    invalid_lines: int = 0
    invalid_words: int = 0
    duplicate_words: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _is_non_negative_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and v >= 0


def _validate_lines(obj: Any, report: ValidationReport) -> None:
    lines = obj.get("lines", []) if isinstance(obj, dict) else []
    for idx, ln in enumerate(lines):
        if not isinstance(ln, dict):
            report.errors.append(f"invalid line[{idx}]: not an object")
            report.invalid_lines += 1
            continue
        if not str(ln.get("line") or "").strip():
            report.errors.append(f"invalid line[{idx}]: empty text")
            report.invalid_lines += 1
        bbox = ln.get("bbox")
        ok = isinstance(bbox, dict) and all(
            _is_non_negative_int(bbox.get(k)) for k in ("x", "y", "width", "height")
        )
        if not ok:
            report.errors.append(f"invalid line[{idx}]: bbox must be {{x,y,width,height}} of non-negative ints")
            report.invalid_lines += 1


def _validate_entries(obj: Any, report: ValidationReport, section: str, label: str) -> None:
    """Words and grammar patterns share one record shape.

    Entries are unique per (term, sense_key); the same term under two
    different sense keys is a homonym, not a duplicate.
    """
    entries = obj.get(section, []) if isinstance(obj, dict) else []
    seen: set[tuple[str, str]] = set()
    for idx, w in enumerate(entries):
        if not isinstance(w, dict):
            report.errors.append(f"invalid {label}[{idx}]: not an object")
            report.invalid_words += 1
            continue
        korean = str(w.get("korean") or "").strip()
        english = str(w.get("english") or "").strip()
        score = w.get("importance_score")
        if not korean or not english:
            report.errors.append(f"invalid {label}[{idx}]: missing korean/english")
            report.invalid_words += 1
        if not isinstance(score, (int, float)) or isinstance(score, bool):
            report.errors.append(f"invalid {label}[{idx}]: importance_score must be a number")
            report.invalid_words += 1
        if korean:
            k = (term_key(korean), term_key(str(w.get("sense_key") or "")))
            if k in seen:
                report.errors.append(f"duplicate {label}[{idx}]: {korean}")
                report.duplicate_words += 1
            seen.add(k)


def validate_job(job_dir: str | Path) -> ValidationReport:
    """Check the output contract of a finished job directory."""
    job_dir = Path(job_dir)
    report = ValidationReport()

    for f in CONTRACT_FILES:
        p = job_dir / f
        if not p.exists():
            report.missing_contract_files += 1
            report.errors.append(f"missing: {p}")

    try:
        result = load_json(job_dir / "result.json")
    except Exception as e:
        report.errors.append(f"failed to read result.json: {e}")
        return report

    _validate_lines(result, report)
    _validate_entries(result, report, "words", "word")
    _validate_entries(result, report, "grammar", "grammar")
    return report
