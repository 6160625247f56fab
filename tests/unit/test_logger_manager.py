"""
Unit tests for bot_logging/logger_manager.py.

Tests cover the per-component log directory layout created at startup.
"""

from __future__ import annotations

import os

import pytest

from bot_logging import logger_manager


@pytest.fixture
def log_root(tmp_path, monkeypatch):
    monkeypatch.setattr(logger_manager, "_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(
        logger_manager,
        "_MODULE_FOLDERS",
        {"rpc_pool": "RPC_Pool_Logs", "pair_detector": "Pair_Detector_Logs"},
    )
    return tmp_path / "logs"


class TestLogDirectories:
    def test_creates_one_folder_per_component(self, log_root):
        created = logger_manager.create_module_log_directories()

        assert created == {
            "rpc_pool": os.path.join(str(log_root), "RPC_Pool_Logs"),
            "pair_detector": os.path.join(str(log_root), "Pair_Detector_Logs"),
        }
        assert all(os.path.isdir(path) for path in created.values())

    def test_existing_folders_are_kept(self, log_root):
        logger_manager.create_module_log_directories()
        marker = log_root / "RPC_Pool_Logs" / "rpc_pool.log"
        marker.write_text("previous run\n")

        logger_manager.create_module_log_directories()
        assert marker.read_text() == "previous run\n"
