"""Tests for the cachepipe CLI."""

import io
import json
import sys
from pathlib import Path

import pytest

from cachepipe.cli import Run, ShowConfig, Status, load_invoker, main, parse_vars, run_pipeline
from cachepipe.config import CachePipeConfig
from cachepipe.pipeline import Pipeline, PipelineInvoker

PIPELINE_MODULE = '''
from cachepipe import NO_CONTENT, Pipeline


async def source(vars, outs, ins):
    for n in range(int(vars["count"])):
        await outs.write(f"{vars['feed']} {n}\\n")


def init(feed, count="2"):
    if feed == "none":
        return NO_CONTENT
    return {"feed": feed, "count": count}


def exclaim(value, vars):
    return value + "!"


pipeline = (
    Pipeline(namespace="feeds")
    .init(init)
    .open(source, "{feed}/raw.txt")
    .transform(str.upper, "shout", "{feed}/shout.txt")
)
'''

CONFIG_YAML = """
cachepipe:
  cache_dir: cache
  pipelines:
    feeds: cli_pipelines:pipeline
    bogus: cli_pipelines:exclaim
  hooks:
    - namespace: feeds
      stage: post
      name: shout
      hook: cli_pipelines:exclaim
"""


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A config directory with a cachepipe.yaml naming an importable pipeline module."""
    (tmp_path / "cli_pipelines.py").write_text(PIPELINE_MODULE)
    (tmp_path / "cachepipe.yaml").write_text(CONFIG_YAML)
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, "cli_pipelines", raising=False)
    monkeypatch.setenv("CACHEPIPE_CONFIG_DIR", str(tmp_path))
    yield tmp_path
    sys.modules.pop("cli_pipelines", None)


class TestParseVars:
    """Test suite for key=value argument parsing."""

    def test_pairs(self) -> None:
        assert parse_vars(["feed=news", "query=a=b", "empty="]) == {"feed": "news", "query": "a=b", "empty": ""}

    def test_missing_equals(self) -> None:
        with pytest.raises(ValueError, match="key=value"):
            parse_vars(["feed"])


class TestLoadInvoker:
    """Test suite for loading configured pipelines."""

    def test_pipeline_is_completed_and_hooked(self, config_dir: Path) -> None:
        """Test a Pipeline is turned into an invoker with configured hooks."""
        config = CachePipeConfig.from_yaml(config_dir / "cachepipe.yaml")
        invoke = load_invoker(config, "feeds")

        assert isinstance(invoke, PipelineInvoker)
        assert len(invoke.pipeline.hooks.hooks("feeds", "post", "shout")) == 1

    def test_not_a_pipeline(self, config_dir: Path) -> None:
        """Test an import path naming something other than a pipeline."""
        config = CachePipeConfig.from_yaml(config_dir / "cachepipe.yaml")
        with pytest.raises(TypeError, match="not a Pipeline"):
            load_invoker(config, "bogus")


class TestRun:
    """Test suite for the run subcommand."""

    def test_run_writes_result(self, config_dir: Path, capsysbinary) -> None:
        """Test the pipeline result is written to stdout and cached."""
        main(Run(name="feeds", var=["feed=news", "count=3"]), config_dir=config_dir)

        captured = capsysbinary.readouterr()
        assert captured.out == b"NEWS 0!\nNEWS 1!\nNEWS 2!\n"
        assert (config_dir / "cache" / "news" / "shout.txt").read_bytes() == captured.out
        assert (config_dir / "cache" / "news" / "raw.txt").read_bytes() == b"news 0\nnews 1\nnews 2\n"

    def test_run_no_content(self, config_dir: Path, capsys) -> None:
        """Test a pipeline with no content exits with an error code."""
        with pytest.raises(SystemExit) as exc_info:
            main(Run(name="feeds", var=["feed=none"]), config_dir=config_dir)

        assert exc_info.value.code == 1
        assert "no content" in capsys.readouterr().err

    def test_run_unknown_pipeline(self, config_dir: Path, capsys) -> None:
        """Test an unconfigured pipeline name."""
        with pytest.raises(SystemExit) as exc_info:
            main(Run(name="missing"), config_dir=config_dir)

        assert exc_info.value.code == 1
        assert "Unknown pipeline 'missing'" in capsys.readouterr().err

    def test_run_bad_vars(self, config_dir: Path, capsys) -> None:
        """Test malformed invocation arguments."""
        with pytest.raises(SystemExit) as exc_info:
            main(Run(name="feeds", var=["news"]), config_dir=config_dir)

        assert exc_info.value.code == 1
        assert "Expected key=value" in capsys.readouterr().err

    async def test_run_pipeline_non_result(self, cache_dir: Path, config: CachePipeConfig) -> None:
        """Test a post function returning a plain value is written as JSON."""

        async def source(vars, outs, ins):
            await outs.write(b"x")

        invoke = Pipeline(cache_dir).open(source).done(lambda vars, result: {"feed": vars["feed"]})
        out = io.BytesIO()

        assert await run_pipeline(invoke, {"feed": "news"}, out) is True
        assert json.loads(out.getvalue()) == {"feed": "news"}


class TestStatus:
    """Test suite for the status subcommand."""

    def test_status_json(self, config_dir: Path, capsys) -> None:
        """Test JSON status output reflects existing cache files."""
        (config_dir / "cache" / "news").mkdir(parents=True)
        (config_dir / "cache" / "news" / "raw.txt").write_text("news 0\n")

        main(Status(name="feeds", var=["feed=news"], json=True), config_dir=config_dir)

        data = json.loads(capsys.readouterr().out)
        assert [(step["index"], step["name"], step["cached"]) for step in data] == [
            (0, "source", True),
            (1, "shout", False),
        ]
        assert data[1]["path"] == str(config_dir / "cache" / "news" / "shout.txt")

    def test_status_table(self, config_dir: Path, capsys) -> None:
        """Test the status table lists each step."""
        main(Status(name="feeds", var=["feed=news"]), config_dir=config_dir)

        out = capsys.readouterr().out
        assert "Pipeline: feeds" in out
        assert "source" in out
        assert "shout" in out
        assert "miss" in out

    def test_status_no_content(self, config_dir: Path, capsys) -> None:
        """Test status for arguments without content."""
        main(Status(name="feeds", var=["feed=none"]), config_dir=config_dir)
        assert "no content" in capsys.readouterr().out

    def test_status_not_a_pipeline(self, config_dir: Path, capsys) -> None:
        """Test status for an import path that isn't a pipeline."""
        with pytest.raises(SystemExit) as exc_info:
            main(Status(name="bogus"), config_dir=config_dir)
        assert exc_info.value.code == 1


class TestShowConfig:
    """Test suite for the config subcommand."""

    def test_show_config(self, config_dir: Path, capsys) -> None:
        """Test the effective configuration is printed."""
        main(ShowConfig(), config_dir=config_dir)

        out = capsys.readouterr().out
        assert "cachepipe configuration" in out
        assert "pipelines[feeds]" in out

    def test_missing_config_file(self, tmp_path: Path, capsys, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test defaults are shown when the config directory has no cachepipe.yaml."""
        monkeypatch.setenv("CACHEPIPE_CONFIG_DIR", str(tmp_path))
        main(ShowConfig(), config_dir=tmp_path)

        captured = capsys.readouterr()
        assert "defaults" in captured.err
        assert "cachepipe configuration" in captured.out
