from __future__ import annotations

import json
from pathlib import Path

import pytest

from vocab_engine.config import PipelineConfig, ReconcileConfig, load_config
from vocab_engine.errors import ConfigError


REPO_ROOT = Path(__file__).resolve().parents[1]


def _write(tmp_path: Path, data) -> Path:
    p = tmp_path / "config.json"
    p.write_text(json.dumps(data), encoding="utf-8")
    return p


class TestLoadConfig:
    def test_defaults_without_file(self):
        cfg = load_config()
        assert cfg == PipelineConfig()
        assert cfg.ocr.language == "kor"
        assert cfg.ocr.ocr_engine == 2
        assert cfg.ocr.scale is False
        assert cfg.extractor.model == "gemini-2.5-flash"
        assert cfg.upscale.enabled is False

    def test_keys_from_env(self, monkeypatch):
        monkeypatch.setenv("OCR_API_KEY", "ocr-secret")
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-secret")
        cfg = load_config()
        assert cfg.ocr.api_key == "ocr-secret"
        assert cfg.extractor.api_key == "gemini-secret"
        assert "secret" not in repr(cfg)

    def test_file_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OCR_API_KEY", "from-env")
        cfg = load_config(_write(tmp_path, {"ocr": {"api_key": "from-file", "language": "eng"}}))
        assert cfg.ocr.api_key == "from-file"
        assert cfg.ocr.language == "eng"

    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("0", False), ("no", False)])
    def test_enable_upscale_env(self, monkeypatch, value, expected):
        monkeypatch.setenv("ENABLE_UPSCALE", value)
        assert load_config().upscale.enabled is expected

    def test_extract_grammar_env_and_file(self, monkeypatch, tmp_path):
        assert load_config().extractor.extract_grammar is False
        monkeypatch.setenv("EXTRACT_GRAMMAR", "1")
        assert load_config().extractor.extract_grammar is True
        # The file wins over the environment.
        path = _write(tmp_path, {"extractor": {"extract_grammar": False}})
        assert load_config(path).extractor.extract_grammar is False

    def test_sections(self, tmp_path):
        cfg = load_config(
            _write(
                tmp_path,
                {
                    "tiling": {"file_size_threshold": 500_000, "overlap_percentage": 0.2},
                    "reconcile": {"dedup_iou_threshold": 0.6},
                },
            )
        )
        assert cfg.tiling.file_size_threshold == 500_000
        assert cfg.tiling.overlap_percentage == 0.2
        assert cfg.reconcile == ReconcileConfig(dedup_iou_threshold=0.6)

    def test_shipped_default_config_loads(self):
        cfg = load_config(REPO_ROOT / "config" / "default.json")
        assert cfg.tiling.file_size_threshold == 1_000_000

    @pytest.mark.parametrize(
        "data",
        [
            {"tiling": {"overlap_percentage": 1.0}},
            {"tiling": {"file_size_threshold": 0}},
            {"tiling": {"no_such_option": 1}},
            {"ocr": "not an object"},
            ["not", "an", "object"],
        ],
    )
    def test_invalid(self, tmp_path, data):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, data))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.json")

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            ReconcileConfig(dedup_iou_threshold=0)
