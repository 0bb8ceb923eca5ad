from __future__ import annotations

import json
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def ensure_dir(path: str | Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def clamp_int(v: int, lo: int, hi: int) -> int:
    return int(max(lo, min(hi, int(v))))


def normalize_text(text: str) -> str:
    """Whitespace/case normalization used to compare OCR spans."""
    text = unicodedata.normalize("NFKC", text)
    return " ".join(text.split()).casefold()


def term_key(term: str) -> str:
    """Case- and diacritic-insensitive identity of a vocabulary term.

    Combining marks are stripped after canonical decomposition; Hangul
    syllables decompose into jamo (not marks) so they survive and are
    recomposed.
    """
    decomposed = unicodedata.normalize("NFKD", term)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return normalize_text(unicodedata.normalize("NFC", stripped))


def write_json(path: str | Path, data: Any) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


def write_text(path: str | Path, text: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def append_jsonl(path: str | Path, obj: dict[str, Any]) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


def load_json(path: str | Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
