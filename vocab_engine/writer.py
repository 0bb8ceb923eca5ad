from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .job import JobPaths
from .types import PipelineResult
from .utils import utc_now_iso, write_json, write_text


@dataclass
class JobWriter:
    paths: JobPaths

    def write_stage(self, result: PipelineResult) -> None:
        """Diagnostics: tile placement and reconciled lines."""
        write_json(
            self.paths.stage_tiles_dir / "tiles.json",
            {"tile_count": len(result.tiles), "tiles": [asdict(t) for t in result.tiles]},
        )
        write_json(
            self.paths.stage_lines_dir / "lines.json",
            {"stats": asdict(result.stats), "lines": [ln.to_dict() for ln in result.lines]},
        )
        write_text(self.paths.stage_lines_dir / "dialogue.txt", result.text)

    def write_final(
        self,
        job_meta: dict[str, Any],
        result: PipelineResult,
        metrics: dict[str, Any],
    ) -> None:
        now = utc_now_iso()

        # Mark completion only when final outputs are successfully written.
        metrics_out = dict(metrics)
        metrics_out.update(
            {
                "finished": True,
                "completed_at": now,
                "tiles_total": len(result.tiles),
                "upscaled": result.upscaled,
                "detections_total": result.stats.detections_in,
                "detections_dropped_degenerate": result.stats.detections_dropped_degenerate,
                "duplicates_removed": result.stats.duplicates_removed,
                "lines_merged": result.stats.lines_merged,
                "lines_total": len(result.lines),
                "words_total": len(result.words),
                "grammar_total": len(result.grammar),
            }
        )

        job_out = dict(job_meta)
        job_out["finished"] = True
        job_out["completed_at"] = now

        write_json(
            self.paths.result_json,
            {
                "job": job_out,
                "lines": [ln.to_dict() for ln in result.lines],
                "words": [w.to_dict() for w in result.words],
                "grammar": [g.to_dict() for g in result.grammar],
            },
        )
        write_json(self.paths.metrics_json, metrics_out)
