from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .job import JobPaths, record_error
from .utils import load_json


CSV_COLUMNS = ["korean", "english", "importance_score", "sense_key", "chapter_example", "source"]


@dataclass
class ExportStats:
    words_seen: int = 0
    words_exported: int = 0
    words_skipped_low_score: int = 0
    words_invalid: int = 0


def load_job_words(paths: JobPaths) -> tuple[list[dict[str, Any]], str, int]:
    """Read words from result.json.

    Returns (valid_words, source, invalid_count). Ordering: score DESC, then term.
    """
    result = load_json(paths.result_json)
    job = result.get("job", {}) if isinstance(result, dict) else {}
    words = result.get("words", []) if isinstance(result, dict) else []

    valid: list[dict[str, Any]] = []
    invalid = 0
    for w in words:
        if (
            not isinstance(w, dict)
            or not str(w.get("korean") or "").strip()
            or not str(w.get("english") or "").strip()
            or not isinstance(w.get("importance_score"), (int, float))
        ):
            invalid += 1
            record_error(paths, page_id="chapter", stage="export", message=f"invalid_word: {w!r}")
            continue
        valid.append(w)

    valid.sort(key=lambda w: (-float(w["importance_score"]), str(w["korean"])))
    source = str(job.get("source") or paths.job_dir.name) if isinstance(job, dict) else paths.job_dir.name
    return valid, source, invalid


def export_csv(
    *,
    job_dir: str | Path,
    out_path: str | Path,
    min_score: float | None = None,
) -> ExportStats:
    """Export extracted words to CSV.

    Rules:
    - Words below min_score are skipped (when given)
    - Invalid word records are skipped and logged to errors.jsonl
    - Raises if nothing is exportable

    CSV columns: see CSV_COLUMNS
    """
    paths = JobPaths.for_job_dir(job_dir)
    out_path = Path(out_path)

    words, source, invalid = load_job_words(paths)
    stats = ExportStats(words_seen=len(words) + invalid, words_invalid=invalid)

    rows: list[dict[str, str]] = []
    for w in words:
        score = float(w["importance_score"])
        if min_score is not None and score < min_score:
            stats.words_skipped_low_score += 1
            continue
        rows.append(
            {
                "korean": str(w["korean"]),
                "english": str(w["english"]),
                "importance_score": f"{score:g}",
                "sense_key": str(w.get("sense_key") or ""),
                "chapter_example": str(w.get("chapter_example") or ""),
                "source": source,
            }
        )

    if not rows:
        raise RuntimeError("No exportable words (all skipped or invalid)")

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for r in rows:
            writer.writerow(r)
            stats.words_exported += 1

    return stats
