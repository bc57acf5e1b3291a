from pathlib import Path

import pytest
from loguru import logger

from migslot.logging import LogConfig, setup_logging, teardown_logging

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestLogConfig:
    @pytest.mark.parametrize(
        ("verbose", "level"), [(0, "WARNING"), (1, "INFO"), (2, "DEBUG"), (5, "DEBUG")],
    )
    def test_from_verbosity(self, verbose: int, level: str):
        assert LogConfig.from_verbosity(verbose).level == level

    def test_file_passed_through(self):
        assert LogConfig.from_verbosity(0, file="x.log").file == "x.log"


class TestHistoryFile:
    def test_context_keys_recorded(self, tmp_path: Path):
        path = tmp_path / "logs" / "migslot.log"
        handlers = setup_logging(LogConfig(file=str(path), console=False))
        try:
            logger.bind(component="orchestrator", slot=3, pid=4242).patch(
                lambda r: r.update(name="migslot.orchestrator")
            ).info("Launched")
        finally:
            teardown_logging(handlers)

        text = path.read_text()
        assert "[component=orchestrator slot=3 pid=4242]" in text
        assert "Launched" in text

    def test_silent_after_teardown(self, tmp_path: Path):
        path = tmp_path / "migslot.log"
        teardown_logging(setup_logging(LogConfig(file=str(path), console=False)))
        assert path.read_text() == ""
