from __future__ import annotations

import hashlib
import html
from dataclasses import dataclass
from pathlib import Path

from ..exporter import ExportStats, load_job_words
from ..job import JobPaths


# Anki ids are signed 32/64-bit ints; stay in the positive 31-bit range.
_ID_SPACE = 2**31 - 1

_CARD_CSS = """\
.card { font-family: sans-serif; font-size: 28px; text-align: center; }
.score, .sense { color: #888; font-size: 14px; }
.example { font-size: 18px; margin-top: 12px; }
"""


@dataclass
class ApkgExportStats(ExportStats):
    deck_name: str | None = None


def deck_id(name: str, kind: str) -> int:
    """Stable per-deck id so re-exports update the same deck/model in Anki."""
    digest = hashlib.sha256(f"vocab_engine:{kind}:{name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % _ID_SPACE


def split_tags(tags: str | None) -> list[str]:
    # Anki splits tags on whitespace.
    return ["_".join(t.split()) for t in (tags or "").split(",") if t.strip()]


def export_apkg(
    *,
    job_dir: str | Path,
    out_path: str | Path,
    deck_name: str | None = None,
    tags: str | None = None,
    min_score: float | None = None,
) -> ApkgExportStats:
    """Export extracted words as an Anki .apkg deck.

    Front = Korean term, Back = English translation (plus the importance
    score, sense and chapter example). The note guid is derived from deck,
    term and sense key, so importing a newer export of the same chapter
    updates notes instead of duplicating them.
    """
    try:
        import genanki  # type: ignore
    except ImportError as e:
        raise RuntimeError("apkg export needs genanki: pip install 'vocab-engine[anki]'") from e

    paths = JobPaths.for_job_dir(job_dir)
    words, source, invalid = load_job_words(paths)
    deck_name = deck_name or source
    stats = ApkgExportStats(words_seen=len(words) + invalid, words_invalid=invalid, deck_name=deck_name)

    model = genanki.Model(
        deck_id(deck_name, "model"),
        "vocab_engine_word",
        fields=[{"name": "Korean"}, {"name": "English"}, {"name": "Score"}, {"name": "Sense"}, {"name": "Example"}],
        templates=[
            {
                "name": "Korean -> English",
                "qfmt": "{{Korean}}",
                "afmt": (
                    "{{FrontSide}}<hr id=answer>{{English}}"
                    '<div class="sense">{{Sense}}</div><div class="example">{{Example}}</div>'
                    '<div class="score">{{Score}}</div>'
                ),
            }
        ],
        css=_CARD_CSS,
    )
    deck = genanki.Deck(deck_id(deck_name, "deck"), deck_name)
    note_tags = split_tags(tags)

    for w in words:
        score = float(w["importance_score"])
        if min_score is not None and score < min_score:
            stats.words_skipped_low_score += 1
            continue
        korean = str(w["korean"])
        sense_key = str(w.get("sense_key") or "")
        deck.add_note(
            genanki.Note(
                model=model,
                fields=[
                    html.escape(korean),
                    html.escape(str(w["english"])),
                    f"{score:g}",
                    html.escape(sense_key),
                    html.escape(str(w.get("chapter_example") or "")),
                ],
                guid=genanki.guid_for(deck_name, korean, sense_key),
                tags=note_tags,
            )
        )
        stats.words_exported += 1

    if not stats.words_exported:
        raise RuntimeError("No exportable words (all skipped or invalid)")

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    genanki.Package(deck).write_to_file(str(out))
    return stats
