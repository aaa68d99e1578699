# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for PipelineTimer and its Server-Timing rendering."""

from __future__ import annotations

import re

from segrelay.pipeline_timer import PipelineTimer


class TestPipelineTimer:
    def test_stage_tracking(self):
        timer = PipelineTimer()
        timer.stage("document")
        timer.stage("segments")
        timer.stage("rewrite")
        timer.finalize()

        stages = timer.elapsed_per_stage()
        assert list(stages.keys()) == ["document", "segments", "rewrite"]
        assert all(isinstance(v, float) for v in stages.values())

    def test_current_stage(self):
        timer = PipelineTimer()
        assert timer.current_stage is None

        timer.stage("document")
        assert timer.current_stage == "document"

        timer.stage("segments")
        assert timer.current_stage == "segments"

        timer.finalize()
        assert timer.current_stage is None

    def test_in_progress_stage_reported(self):
        timer = PipelineTimer()
        timer.stage("document")
        assert "document" in timer.elapsed_per_stage()

    def test_finalize_is_idempotent(self):
        timer = PipelineTimer()
        timer.stage("document")
        timer.finalize()
        timer.finalize()
        assert list(timer.elapsed_per_stage()) == ["document"]

    def test_total_not_less_than_stages(self):
        timer = PipelineTimer()
        timer.stage("document")
        timer.stage("rewrite")
        timer.finalize()
        assert timer.total_ms() >= sum(timer.elapsed_per_stage().values()) - 0.2


class TestServerTiming:
    def test_format(self):
        timer = PipelineTimer()
        timer.stage("document")
        timer.stage("segments")
        timer.finalize()
        value = timer.server_timing()
        assert re.fullmatch(r"document;dur=[\d.]+, segments;dur=[\d.]+, total;dur=[\d.]+", value)

    def test_no_stages_only_total(self):
        assert re.fullmatch(r"total;dur=[\d.]+", PipelineTimer().server_timing())
