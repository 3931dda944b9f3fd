"""Tests for the package entry point: logging setup and exported API."""

from __future__ import annotations

import logging
from pathlib import Path

import fridge_erp
from fridge_erp import errors, gateway, settlement


def test_log_dir_defaults_to_working_directory(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    assert fridge_erp.resolve_log_dir({}) == tmp_path / ".logs"


def test_log_dir_honours_environment(tmp_path):
    target = tmp_path / "var" / "log"
    assert fridge_erp.resolve_log_dir({fridge_erp.LOG_DIR_ENV: str(target)}) == target
    assert fridge_erp.resolve_log_dir({fridge_erp.LOG_DIR_ENV: "  "}) == Path.cwd() / ".logs"


def test_log_level_from_environment():
    assert fridge_erp.resolve_log_level({}) == logging.INFO
    assert fridge_erp.resolve_log_level({fridge_erp.LOG_LEVEL_ENV: "debug"}) == logging.DEBUG
    assert fridge_erp.resolve_log_level({fridge_erp.LOG_LEVEL_ENV: "chatty"}) == logging.INFO


def test_package_logger_has_console_handler():
    assert fridge_erp.log.name == "fridge_erp"
    assert any(isinstance(handler, logging.StreamHandler) for handler in fridge_erp.log.handlers)


def test_service_api_is_exported_at_package_level():
    assert fridge_erp.SettlementCoordinator is settlement.SettlementCoordinator
    assert fridge_erp.PersistenceGateway is gateway.PersistenceGateway
    assert fridge_erp.BusinessRuleViolation is errors.BusinessRuleViolation
    for name in fridge_erp.__all__:
        assert hasattr(fridge_erp, name), name
