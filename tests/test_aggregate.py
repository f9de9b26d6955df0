"""Tests for job status aggregation and coverage merging/upload."""

from __future__ import annotations

import json
import threading
import time
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from matrixci.actions import ActionExecutor, ActionOutcome, ActionRegistry
from matrixci.aggregate import coverage_metadata, job_status, merge_and_upload, summarize_job
from matrixci.cobertura import CoverageUploader, HttpUploader, merge_cobertura
from matrixci.dsl import coverage, job, sh, uses
from matrixci.errors import MergeFailure
from matrixci.expander import expand_matrix
from matrixci.model import FAILED, FATAL, SUCCEEDED, TOLERATED, JobResult
from matrixci.scheduler import run_pipeline


def _report(path: Path, lines, filename="src/lib.rs", source="/work") -> Path:
    body = "".join(f'<line number="{n}" hits="{h}"/>' for n, h in lines)
    path.write_text(
        f'<?xml version="1.0"?>'
        f"<coverage><sources><source>{source}</source></sources>"
        f'<packages><package name="crate"><classes>'
        f'<class name="lib" filename="{filename}"><lines>{body}</lines></class>'
        f"</classes></package></packages></coverage>",
        encoding="utf-8",
    )
    return path


class _Uploads(CoverageUploader):
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def upload(self, report, metadata):
        if self.error:
            raise self.error
        self.calls.append((Path(report), metadata))


def _results(j, statuses, artifacts=None, env=None):
    instances = expand_matrix(j.axes, j.include, job=j.name)
    out = []
    for inst, status in zip(instances, statuses):
        out.append(JobResult(
            instance=inst,
            status=status,
            artifacts=list((artifacts or {}).get(inst.index, [])),
            env=dict(env or {}),
        ))
    return out


class TestJobStatus:
    def test_any_fatal_fails_the_job(self):
        j = job("build", sh("b", "b"), matrix={"t": ["1", "2", "3"]})
        assert job_status(_results(j, [SUCCEEDED, FATAL, TOLERATED])) == FAILED

    def test_tolerated_only(self):
        j = job("build", sh("b", "b"), matrix={"t": ["1", "2"]})
        assert job_status(_results(j, [SUCCEEDED, TOLERATED])) == TOLERATED

    def test_all_succeeded(self):
        j = job("build", sh("b", "b"), matrix={"t": ["1", "2"]})
        assert job_status(_results(j, [SUCCEEDED, SUCCEEDED])) == SUCCEEDED


class TestMergeCobertura:
    def test_max_hits_per_line(self, tmp_path):
        a = _report(tmp_path / "a.xml", [(1, 1), (2, 0), (3, 0)])
        b = _report(tmp_path / "b.xml", [(1, 0), (2, 4), (4, 0)])
        merged = merge_cobertura([a, b], tmp_path / "out" / "merged.xml")

        assert merged.sources == 2
        assert merged.lines_valid == 4
        assert merged.lines_covered == 2
        assert merged.line_rate == pytest.approx(0.5)

        root = ET.parse(merged.path).getroot()
        hits = {int(l.get("number")): int(l.get("hits")) for l in root.iter("line")}
        assert hits == {1: 1, 2: 4, 3: 0, 4: 0}
        assert root.get("lines-covered") == "2"

    def test_files_are_kept_apart(self, tmp_path):
        a = _report(tmp_path / "a.xml", [(1, 1)], filename="src/a.rs")
        b = _report(tmp_path / "b.xml", [(1, 0)], filename="src/b.rs")
        merged = merge_cobertura([a, b], tmp_path / "m.xml")
        root = ET.parse(merged.path).getroot()
        assert sorted(c.get("filename") for c in root.iter("class")) == ["src/a.rs", "src/b.rs"]
        assert merged.lines_covered == 1

    def test_missing_report(self, tmp_path):
        with pytest.raises(MergeFailure, match="not found"):
            merge_cobertura([tmp_path / "nope.xml"], tmp_path / "m.xml")

    def test_invalid_xml(self, tmp_path):
        bad = tmp_path / "bad.xml"
        bad.write_text("<coverage>", encoding="utf-8")
        with pytest.raises(MergeFailure, match="not valid XML"):
            merge_cobertura([bad], tmp_path / "m.xml")

    def test_wrong_root(self, tmp_path):
        other = tmp_path / "junit.xml"
        other.write_text("<testsuite/>", encoding="utf-8")
        with pytest.raises(MergeFailure, match="not a Cobertura report"):
            merge_cobertura([other], tmp_path / "m.xml")

    def test_nothing_to_merge(self, tmp_path):
        with pytest.raises(MergeFailure):
            merge_cobertura([], tmp_path / "m.xml")


class TestMergeAndUpload:
    def _job(self, **cov):
        return job(
            "coverage",
            sh("t", "t"),
            matrix={"toolchain": ["stable"], "target": ["A", "B"]},
            coverage=coverage(
                name="${{ matrix.toolchain }}-${{ matrix.target }}",
                env_vars="OS,TARGET,TOOLCHAIN,JOB",
                **cov,
            ),
        )

    def test_upload_gets_report_and_metadata(self, tmp_path):
        j = self._job()
        a = _report(tmp_path / "a.xml", [(1, 1)])
        b = _report(tmp_path / "b.xml", [(1, 0), (2, 1)])
        results = _results(j, [SUCCEEDED, TOLERATED], {0: [a], 1: [b]}, env={"OS": "L", "JOB": "coverage", "SECRET": "x"})
        uploader = _Uploads()

        path = merge_and_upload(j, results, uploader, tmp_path / "out")
        assert path == tmp_path / "out" / "coverage.xml"
        assert path.exists()

        (report, metadata), = uploader.calls
        assert report == path
        assert metadata["job"] == "coverage"
        assert [i["name"] for i in metadata["instances"]] == ["stable-A", "stable-B"]
        assert metadata["instances"][0]["matrix"] == {"toolchain": "stable", "target": "A"}
        # only the listed env vars are reported
        assert metadata["instances"][0]["env"] == {"OS": "L", "JOB": "coverage"}

    def test_fatal_instances_do_not_contribute(self, tmp_path):
        j = self._job()
        a = _report(tmp_path / "a.xml", [(1, 1)])
        b = _report(tmp_path / "b.xml", [(5, 1)])
        results = _results(j, [SUCCEEDED, FATAL], {0: [a], 1: [b]})
        uploader = _Uploads()
        merge_and_upload(j, results, uploader, tmp_path)
        _, metadata = uploader.calls[0]
        assert len(metadata["instances"]) == 1

    def test_explicit_output_path(self, tmp_path):
        j = self._job(output=str(tmp_path / "lcov" / "merged.xml"))
        results = _results(j, [SUCCEEDED, SUCCEEDED], {0: [_report(tmp_path / "a.xml", [(1, 1)])]})
        assert merge_and_upload(j, results, None) == tmp_path / "lcov" / "merged.xml"

    def test_upload_errors_become_merge_failures(self, tmp_path):
        j = self._job()
        results = _results(j, [SUCCEEDED, SUCCEEDED], {0: [_report(tmp_path / "a.xml", [(1, 1)])]})
        with pytest.raises(MergeFailure, match="upload failed"):
            merge_and_upload(j, results, _Uploads(error=OSError("disk full")), tmp_path)

    def test_metadata_name_falls_back_to_instance_name(self):
        j = job("coverage", sh("t", "t"), matrix={"target": ["A"]}, coverage=coverage())
        metadata = coverage_metadata(j, _results(j, [SUCCEEDED]))
        assert metadata["instances"][0]["name"] == "coverage (A)"


class TestSummarizeJob:
    def test_missing_reports_is_a_warning(self, tmp_path):
        j = job("coverage", sh("t", "t"), matrix={"target": ["A"]}, coverage=coverage())
        summary = summarize_job(j, _results(j, [SUCCEEDED]), coverage_dir=tmp_path)
        assert summary.status == SUCCEEDED
        assert summary.warnings == ["no coverage reports were produced"]

    def test_fail_ci_if_error_escalates(self, tmp_path):
        j = job("coverage", sh("t", "t"), matrix={"target": ["A"]}, coverage=coverage(fail_ci_if_error=True))
        summary = summarize_job(j, _results(j, [SUCCEEDED]), coverage_dir=tmp_path)
        assert summary.status == FAILED
        assert summary.warnings

    def test_failed_job_skips_coverage(self, tmp_path):
        j = job("coverage", sh("t", "t"), matrix={"target": ["A"]}, coverage=coverage(fail_ci_if_error=True))
        uploader = _Uploads()
        a = _report(tmp_path / "a.xml", [(1, 1)])
        summary = summarize_job(j, _results(j, [FATAL], {0: [a]}), uploader=uploader, coverage_dir=tmp_path)
        assert summary.status == FAILED
        assert summary.coverage_report is None
        assert uploader.calls == []


class TestCoveragePipeline:
    def test_reports_from_every_instance_are_merged(self, tmp_path):
        registry = ActionRegistry()

        @registry.register("tarpaulin")
        def _tarpaulin(params, env):
            target = params["target"]
            path = tmp_path / f"{target}.xml"
            _report(path, [(1, 1 if target == "A" else 0), (2, 1 if target == "B" else 0)])
            return ActionOutcome(success=True, artifacts=[path])

        uploader = _Uploads()
        j = job(
            "coverage-tarpaulin",
            uses("Run tarpaulin", "tarpaulin", with_={"target": "${{ matrix.target }}"}),
            matrix={"target": ["A", "B"]},
            env={"TARGET": "${{ matrix.target }}", "JOB": "${{ github.job }}"},
            coverage=coverage(name="${{ matrix.target }}", fail_ci_if_error=True, env_vars=["TARGET", "JOB"]),
        )
        result = run_pipeline(
            [j],
            executor=ActionExecutor(registry=registry, workdir=tmp_path),
            uploader=uploader,
            coverage_dir=tmp_path / "merged",
        )
        summary = result.jobs["coverage-tarpaulin"]
        assert summary.status == SUCCEEDED
        assert summary.coverage_report == tmp_path / "merged" / "coverage-tarpaulin.xml"

        _, metadata = uploader.calls[0]
        assert metadata["instances"] == [
            {"name": "A", "matrix": {"target": "A"}, "env": {"TARGET": "A", "JOB": "coverage-tarpaulin"}},
            {"name": "B", "matrix": {"target": "B"}, "env": {"TARGET": "B", "JOB": "coverage-tarpaulin"}},
        ]
        root = ET.parse(summary.coverage_report).getroot()
        assert root.get("lines-covered") == "2"

    def test_upload_does_not_hold_up_other_jobs(self, tmp_path):
        registry = ActionRegistry()
        last_started = threading.Event()

        @registry.register("report")
        def _report_action(params, env):
            return ActionOutcome(success=True, artifacts=[_report(tmp_path / "cov.xml", [(1, 1)])])

        @registry.register("work")
        def _work(params, env):
            if params["n"] == "0":
                time.sleep(0.1)
            if params["n"] == "2":
                last_started.set()
            return ActionOutcome(success=True)

        class _SlowUploads(_Uploads):
            saw = None

            def upload(self, report, metadata):
                # only returns True if the scheduler kept starting instances meanwhile
                self.saw = last_started.wait(timeout=5)

        uploader = _SlowUploads()
        jobs = [
            job("cov", uses("r", "report"), coverage=coverage()),
            job("b", uses("w", "work", with_={"n": "${{ matrix.n }}"}), matrix={"n": ["0", "1", "2"]}, max_parallel=1),
        ]
        result = run_pipeline(
            jobs,
            executor=ActionExecutor(registry=registry, workdir=tmp_path),
            max_workers=3,
            uploader=uploader,
            coverage_dir=tmp_path / "merged",
        )
        assert uploader.saw is True
        assert not result.failed
        assert result.jobs["cov"].coverage_report == tmp_path / "merged" / "cov.xml"


class TestHttpUploader:
    def test_uploader_interface_is_abstract(self):
        with pytest.raises(TypeError):
            CoverageUploader()

    def test_posts_json(self, tmp_path, monkeypatch):
        report = _report(tmp_path / "r.xml", [(1, 1)])
        sent = {}

        class _Response:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def read(self):
                return b"{}"

        def fake_urlopen(req, timeout):
            sent["url"] = req.full_url
            sent["method"] = req.get_method()
            sent["body"] = json.loads(req.data.decode("utf-8"))
            return _Response()

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        HttpUploader("https://coverage.example/upload").upload(report, {"job": "coverage"})

        assert sent["url"] == "https://coverage.example/upload"
        assert sent["method"] == "POST"
        assert sent["body"]["metadata"] == {"job": "coverage"}
        assert sent["body"]["format"] == "cobertura"
        assert "<coverage" in sent["body"]["report"]

    def test_network_error_is_merge_failure(self, tmp_path, monkeypatch):
        import urllib.error

        report = _report(tmp_path / "r.xml", [(1, 1)])

        def fake_urlopen(req, timeout):
            raise urllib.error.URLError("connection refused")

        monkeypatch.setattr("urllib.request.urlopen", fake_urlopen)
        with pytest.raises(MergeFailure, match="network error"):
            HttpUploader("https://coverage.example/upload").upload(report, {})
