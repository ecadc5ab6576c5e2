"""Tests for rundiag.cli.main."""

import json

import pytest
from click.testing import CliRunner

from rundiag.cli.main import cli


WHITE = b"\xff\xff\xff\xff"
BLACK = b"\x00\x00\x00\xff"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def snapshot_file(tmp_path, leaky_raw_snapshot):
    path = tmp_path / "page.heapsnapshot"
    path.write_text(json.dumps(leaky_raw_snapshot), encoding="utf-8")
    return path


@pytest.fixture
def image_files(tmp_path):
    """A 100x100 white baseline and a candidate with a 20x20 black square."""
    baseline = bytearray(WHITE * 10_000)
    candidate = bytearray(baseline)
    for y in range(10, 30):
        for x in range(10, 30):
            pos = (y * 100 + x) * 4
            candidate[pos:pos + 4] = BLACK
    a = tmp_path / "baseline.rgba"
    b = tmp_path / "candidate.rgba"
    a.write_bytes(bytes(baseline))
    b.write_bytes(bytes(candidate))
    return a, b


@pytest.fixture
def events_file(tmp_path):
    lines = [
        {"message": "Cannot read property 'name' of undefined", "timestamp": 0, "line": 42},
        {"message": "Cannot read property 'name' of undefined", "timestamp": 1000, "line": 42},
        {"message": "Cannot read property 'id' of undefined", "timestamp": 2000, "line": 42},
    ]
    path = tmp_path / "console.jsonl"
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n\nnot json\n", encoding="utf-8")
    return path


class TestCLIGroup:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Runtime diagnostics" in result.output

    def test_invalid_config(self, runner, tmp_path, snapshot_file):
        bad = tmp_path / "config.json"
        bad.write_text("[1, 2]", encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(bad), "heap", str(snapshot_file)])
        assert result.exit_code == 1
        assert "Invalid config" in result.output


class TestHeapCommand:
    def test_heap(self, runner, snapshot_file):
        result = runner.invoke(cli, ["heap", str(snapshot_file)])
        assert result.exit_code == 0
        assert "Detached DOM" in result.output
        assert "HTMLDivElement" in result.output

    def test_top_limits_clusters(self, runner, snapshot_file):
        result = runner.invoke(cli, ["heap", str(snapshot_file), "--top", "0"])
        assert result.exit_code == 0
        assert "No detached DOM found" in result.output

    def test_heap_with_baseline(self, runner, snapshot_file):
        result = runner.invoke(cli, ["heap", str(snapshot_file), "--baseline", str(snapshot_file)])
        assert result.exit_code == 0
        assert "Constructor Growth" not in result.output

    def test_heap_malformed(self, runner, tmp_path):
        path = tmp_path / "bad.heapsnapshot"
        path.write_text("{", encoding="utf-8")
        result = runner.invoke(cli, ["heap", str(path)])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_heap_missing_file(self, runner):
        result = runner.invoke(cli, ["heap", "/nonexistent/page.heapsnapshot"])
        assert result.exit_code != 0


class TestGrowthCommand:
    def test_leak(self, runner, tmp_path):
        path = tmp_path / "timeline.json"
        samples = [
            {"timestamp": i * 1000, "used_size": size}
            for i, size in enumerate([10_000_000, 10_500_000, 11_000_000, 11_800_000, 12_500_000])
        ]
        path.write_text(json.dumps({"samples": samples}), encoding="utf-8")
        result = runner.invoke(cli, ["growth", str(path)])
        assert result.exit_code == 0
        assert "LEAK SUSPECTED" in result.output
        assert "25.0%" in result.output

    def test_threshold_option(self, runner, tmp_path):
        path = tmp_path / "timeline.json"
        path.write_text(json.dumps([
            {"timestamp": 0, "used_size": 100},
            {"timestamp": 1, "used_size": 104},
            {"timestamp": 2, "used_size": 108},
        ]), encoding="utf-8")
        assert "no sustained growth" in runner.invoke(cli, ["growth", str(path)]).output
        result = runner.invoke(cli, ["growth", str(path), "--threshold", "5"])
        assert "LEAK SUSPECTED" in result.output

    def test_unordered_timeline(self, runner, tmp_path):
        path = tmp_path / "timeline.json"
        path.write_text(json.dumps([
            {"timestamp": 5, "used_size": 100},
            {"timestamp": 1, "used_size": 104},
        ]), encoding="utf-8")
        result = runner.invoke(cli, ["growth", str(path)])
        assert result.exit_code == 1


class TestDiffCommand:
    def test_diff(self, runner, image_files, tmp_path):
        a, b = image_files
        overlay = tmp_path / "overlay.rgba"
        result = runner.invoke(cli, [
            "diff", str(a), str(b), "--width", "100", "--height", "100",
            "--overlay", str(overlay),
        ])
        assert result.exit_code == 0
        assert "96.00%" in result.output
        assert "10, 10, 20, 20" in result.output
        assert overlay.stat().st_size == 40_000

    def test_wrong_size(self, runner, image_files):
        a, b = image_files
        result = runner.invoke(cli, ["diff", str(a), str(b), "--width", "50", "--height", "50"])
        assert result.exit_code == 1

    def test_invalid_threshold(self, runner, image_files):
        a, b = image_files
        result = runner.invoke(cli, [
            "diff", str(a), str(b), "-W", "100", "-H", "100", "--threshold", "2",
        ])
        assert result.exit_code == 1


class TestErrorsCommand:
    def test_errors(self, runner, events_file):
        result = runner.invoke(cli, ["errors", str(events_file)])
        assert result.exit_code == 0
        assert "Recurring Errors" in result.output
        assert "'name'" in result.output
        assert "unreadable" in result.output

    def test_min_occurrences(self, runner, events_file):
        result = runner.invoke(cli, ["errors", str(events_file), "--min-occurrences", "5"])
        assert result.exit_code == 0
        assert "No recurring errors" in result.output


class TestAnalyzeCommand:
    @pytest.fixture
    def manifest(self, tmp_path, snapshot_file, image_files, events_file):
        a, b = image_files
        path = tmp_path / "capture.json"
        path.write_text(json.dumps({
            "snapshots": [{"path": snapshot_file.name, "timestamp": 30_000}],
            "samples": [{"timestamp": 0, "used_size": 1000}, {"timestamp": 10_000, "used_size": 1200}],
            "screenshots": {"baseline": a.name, "candidate": b.name, "width": 100, "height": 100},
            "errors": events_file.name,
        }), encoding="utf-8")
        return path

    def test_terminal(self, runner, manifest):
        result = runner.invoke(cli, ["analyze", str(manifest)])
        assert result.exit_code == 0
        assert "Runtime Diagnostics Report" in result.output

    def test_json(self, runner, manifest, tmp_path):
        out = tmp_path / "report.json"
        result = runner.invoke(cli, [
            "analyze", str(manifest), "--format", "json", "--output", str(out), "--serial",
        ])
        assert result.exit_code == 0
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["report"]["match_percentage"] == pytest.approx(96.0)
        assert [s["status"] for s in data["report"]["sections"]] == ["ok", "ok", "ok"]

    def test_not_an_object(self, runner, tmp_path):
        path = tmp_path / "capture.json"
        path.write_text("[]", encoding="utf-8")
        result = runner.invoke(cli, ["analyze", str(path)])
        assert result.exit_code == 1


class TestInitConfig:
    def test_round_trip(self, runner, tmp_path, snapshot_file):
        path = tmp_path / "rundiag.json"
        result = runner.invoke(cli, ["init-config", str(path)])
        assert result.exit_code == 0
        data = json.loads(path.read_text())
        assert data["diff"]["threshold"] == 0.1

        result = runner.invoke(cli, ["--config", str(path), "heap", str(snapshot_file)])
        assert result.exit_code == 0
