"""Unit tests for the provider registry."""

from unittest.mock import MagicMock, patch

import pytest

from integrations.provider_registry import (
    ALL_PROVIDER_NAMES,
    PROVIDER_DEFINITIONS,
    ProviderRegistry,
)
from tests.fixtures.mocks import MockProviderAdapter


class TestProviderRegistry:
    def test_empty_registry(self):
        assert ProviderRegistry().list_providers() == []

    def test_register_and_get(self):
        registry = ProviderRegistry()
        adapter = MockProviderAdapter(name="bank")

        registry.register_provider(adapter)

        assert registry.get_provider("bank") is adapter
        assert registry.is_configured("bank")
        assert registry.list_providers() == ["bank"]

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="not configured"):
            ProviderRegistry().get_provider("nope")

    def test_definitions(self):
        assert ALL_PROVIDER_NAMES == ["tink", "plaid"]
        assert all(len(entry) == 3 for entry in PROVIDER_DEFINITIONS)


class TestInitializeDefaultProviders:
    def _definitions(self, *classes):
        module = MagicMock()
        for name, cls in classes:
            setattr(module, cls.__name__, cls)
        defs = [(name, "fake.module", cls.__name__) for name, cls in classes]
        return module, defs

    def test_registers_configured_and_skips_unconfigured(self):
        class Configured(MockProviderAdapter):
            def __init__(self):
                super().__init__(name="configured")

        class Unconfigured(MockProviderAdapter):
            def __init__(self):
                super().__init__(name="unconfigured")

            def is_configured(self):
                return False

        module, defs = self._definitions(("configured", Configured), ("unconfigured", Unconfigured))
        with patch("integrations.provider_registry.PROVIDER_DEFINITIONS", defs), patch(
            "integrations.provider_registry.importlib.import_module", return_value=module
        ):
            registry = ProviderRegistry()
            registry.initialize_default_providers()

        assert registry.list_providers() == ["configured"]

    def test_constructor_failure_does_not_stop_others(self):
        class Broken:
            def __init__(self):
                raise RuntimeError("bad config")

        class Working(MockProviderAdapter):
            def __init__(self):
                super().__init__(name="working")

        module, defs = self._definitions(("broken", Broken), ("working", Working))
        with patch("integrations.provider_registry.PROVIDER_DEFINITIONS", defs), patch(
            "integrations.provider_registry.importlib.import_module", return_value=module
        ):
            registry = ProviderRegistry()
            registry.initialize_default_providers()

        assert registry.list_providers() == ["working"]

    def test_missing_sdk_is_skipped(self):
        with patch(
            "integrations.provider_registry.importlib.import_module",
            side_effect=ImportError("no plaid"),
        ):
            registry = ProviderRegistry()
            registry.initialize_default_providers()

        assert registry.list_providers() == []
