from __future__ import annotations

from pathlib import Path

import pytest

from xrecon.config import ConfigError, load_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_for_empty_config(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, ""))

    assert config.source.type == "x_api"
    assert config.storage.path == str((tmp_path / "data/knowledge.sqlite").resolve())
    assert config.tagging.enabled is False
    assert config.hydration.max_attempts == 7
    assert config.hydration.backfill_job == "article-content-v1"
    assert config.listing.snippet_chars == 600
    assert config.listing.max_total_chars == 80000
    assert config.log_level == "INFO"


def test_sections_are_parsed_and_paths_resolved(tmp_path: Path) -> None:
    config = load_config(
        _write(
            tmp_path,
            """
log_level: debug
storage:
  path: state/posts.sqlite
source:
  id: offline
  type: json_file
  url: exports/posts.json
  timeout_seconds: 5
tagging:
  enabled: "yes"
  batch_size: 10
hydration:
  max_attempts: 3
  limit: 25
listing:
  limit: 50
""",
        )
    )

    assert config.log_level == "DEBUG"
    assert config.storage.path == str((tmp_path / "state/posts.sqlite").resolve())
    assert config.source.url == str((tmp_path / "exports/posts.json").resolve())
    assert config.source.options == {"timeout_seconds": 5}
    assert config.tagging.enabled is True
    assert config.tagging.batch_size == 10
    assert config.hydration.max_attempts == 3
    assert config.hydration.limit == 25
    assert config.listing.limit == 50


@pytest.mark.parametrize(
    "text",
    [
        "- not\n- a mapping\n",
        "hydration:\n  max_attempts: 0\n",
        "hydration:\n  limit: many\n",
        "tagging:\n  enabled: maybe\n",
        "listing: [1, 2]\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, text))


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
