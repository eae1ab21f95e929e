# test_imports.py
import importlib

import pytest

import ai_usage_ledger


def test_package_version():
    assert ai_usage_ledger.__version__ == "0.1.0"


@pytest.mark.parametrize("module", [
    "ai_usage_ledger.cli.main",
    "ai_usage_ledger.config.loader",
    "ai_usage_ledger.core.aggregation",
    "ai_usage_ledger.core.dedup",
    "ai_usage_ledger.core.errors",
    "ai_usage_ledger.core.file_tracker",
    "ai_usage_ledger.core.hybrid",
    "ai_usage_ledger.core.normalizer",
    "ai_usage_ledger.core.pipeline",
    "ai_usage_ledger.core.pricing",
    "ai_usage_ledger.core.statistics",
    "ai_usage_ledger.core.sync",
    "ai_usage_ledger.core.token_counter",
    "ai_usage_ledger.storage.db",
    "ai_usage_ledger.storage.models",
    "ai_usage_ledger.storage.repository",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None
