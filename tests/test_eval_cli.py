from __future__ import annotations

import json
from pathlib import Path

import pytest

from ragcache.config import Settings
from ragcache.eval import cli


def _write_queries(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "queries.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_load_queries_accepts_list_and_fixture_forms(tmp_path: Path):
    documents, queries = cli.load_queries(_write_queries(tmp_path, ["a", "b"]))
    assert documents == [] and queries == ["a", "b"]

    documents, queries = cli.load_queries(
        _write_queries(
            tmp_path,
            {
                "documents": [{"id": "guide", "title": "Guide", "content": "Caching stores answers."}],
                "queries": ["What is caching?", {"question": "Why cache?"}],
            },
        ),
    )
    assert [document.id for document in documents] == ["guide"]
    assert queries == ["What is caching?", "Why cache?"]


def test_replay_reports_repeat_queries_as_hits(tmp_path: Path):
    path = _write_queries(tmp_path, ["What is caching?", "What is caching?", "Something else"])
    json_out = tmp_path / "report.json"

    result = cli.run_replay(path, settings=Settings(environment="test"), json_out=json_out)

    assert result.total_queries == 3
    assert result.cache_hits == 1
    assert result.hit_rate == pytest.approx(1 / 3)
    assert [detail["cache_hit"] for detail in result.details] == [False, True, False]
    assert result.hypothetical_tokens_saved == result.details[1]["tokens_used"]
    assert json.loads(json_out.read_text(encoding="utf-8"))["cache_hits"] == 1


def test_replay_with_documents_uses_context(tmp_path: Path):
    content = "Caching stores answers for similar prompts."
    path = _write_queries(
        tmp_path,
        {"documents": [{"id": "guide", "title": "Guide", "content": content}], "queries": [content]},
    )

    result = cli.run_replay(path, rag_enabled=True, settings=Settings(environment="test"))

    assert result.details[0]["rag_hit"] is True


def test_main_fails_below_min_hit_rate(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    path = _write_queries(tmp_path, ["one question", "another question"])

    assert cli.main(["--queries", str(path), "--min-hit-rate", "0.9"]) == 1
    captured = capsys.readouterr()
    assert json.loads(captured.out)["total_queries"] == 2
    assert "failed threshold" in captured.err

    assert cli.main(["--queries", str(path)]) == 0
