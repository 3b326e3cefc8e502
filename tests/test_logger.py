"""
Tests for NarrativeLogger JSONL debug output.

Run with: python -m pytest tests/test_logger.py -v
"""

import json

from codeweaver.config.settings import Settings
from codeweaver.models import StoryRequest
from codeweaver.services.connectivity import StaticConnectivity
from codeweaver.services.generation_client import GenerationClient
from codeweaver.services.logger import NarrativeLogger
from codeweaver.services.prompt_builder import PromptBuilder

from conftest import FakeGenerator


class TestNarrativeLogger:
    """Debug flags route generation calls and cache operations to JSONL files"""

    def test_no_files_without_debug_flags(self, tmp_path):
        logger = NarrativeLogger(settings=Settings(debug_log_dir=str(tmp_path)), quiet=True)
        logger.generation_call("fake", "fake-model", 10, 20, 0.5)
        assert logger.api_calls_log is None
        assert list(tmp_path.iterdir()) == []

    async def test_generation_calls_are_recorded(self, tmp_path):
        settings = Settings(debug_api_calls=True, debug_log_dir=str(tmp_path))
        logger = NarrativeLogger(settings=settings, quiet=True)
        client = GenerationClient(FakeGenerator(["ok"]), StaticConnectivity(True), narrative_logger=logger)

        await client.generate(PromptBuilder().build(StoryRequest(learning_concepts=["loops"])))

        records = [json.loads(line) for line in logger.api_calls_log.read_text().splitlines()]
        assert len(records) == 1
        assert records[0]["type"] == "generation_call"
        assert records[0]["template"] == "story"
        assert records[0]["status"] == "success"
        assert records[0]["model"] == "fake-model"

    def test_cache_operations_are_recorded(self, tmp_path):
        settings = Settings(debug_storage=True, debug_log_dir=str(tmp_path))
        logger = NarrativeLogger(settings=settings, quiet=True)

        logger.cache_operation("write", "stories/fresh_abc.json", size_bytes=128, duration=0.01)

        record = json.loads(logger.storage_log.read_text().strip())
        assert record["operation"] == "write"
        assert record["path"] == "stories/fresh_abc.json"
        assert record["size_bytes"] == 128

    def test_unwritable_log_file_reports_error_without_raising(self, tmp_path, capsys):
        settings = Settings(debug_storage=True, debug_log_dir=str(tmp_path))
        logger = NarrativeLogger(settings=settings)
        # A directory cannot be opened for appending
        logger.storage_log = tmp_path

        logger.cache_operation("write", "stories/fresh_abc.json", size_bytes=128)

        output = capsys.readouterr().out
        assert "Error in LOGGER: Failed to write JSON log" in output

    def test_only_event_methods_are_exposed(self):
        for name in ("info", "warning", "debug"):
            assert not hasattr(NarrativeLogger, name)
