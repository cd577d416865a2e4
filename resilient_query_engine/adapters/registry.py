"""
Plugin registry for surface adapters.

Adapters register themselves at import time with @AdapterRegistry.register.
Studies name an adapter in YAML (`surface.adapter`) and the orchestrator
creates it through the registry after the plugin validates its config.

Example:
    >>> @AdapterRegistry.register
    ... class MySurfacePlugin:
    ...     @classmethod
    ...     def plugin_name(cls) -> str:
    ...         return "my-surface"
    ...
    ...     @classmethod
    ...     def adapter_kind(cls) -> str:
    ...         return "api"
    ...
    ...     @classmethod
    ...     def create_adapter(cls, config: dict) -> SurfaceAdapter:
    ...         return MySurfaceAdapter(**config)
    ...
    ...     @classmethod
    ...     def validate_config(cls, config: dict) -> tuple[bool, str]:
    ...         return True, ""
    ...
    ...     @classmethod
    ...     def required_env_vars(cls) -> list[str]:
    ...         return ["MY_SURFACE_API_KEY"]

    >>> adapter = AdapterRegistry.create_adapter("my-surface", {})
"""

import logging
from typing import Protocol

from .base import SurfaceAdapter

logger = logging.getLogger(__name__)

ADAPTER_KINDS = ("api", "session")


class AdapterPlugin(Protocol):
    """
    Factory interface every adapter plugin implements as class methods.

    Class methods:
        plugin_name: Unique name used in `surface.adapter`
        adapter_kind: "api" (HTTP client session) or "session" (browser page)
        create_adapter: Build an adapter from validated config
        validate_config: Return (is_valid, error_message)
        required_env_vars: Environment variables the plugin usually needs
    """

    @classmethod
    def plugin_name(cls) -> str: ...

    @classmethod
    def adapter_kind(cls) -> str: ...

    @classmethod
    def create_adapter(cls, config: dict) -> SurfaceAdapter: ...

    @classmethod
    def validate_config(cls, config: dict) -> tuple[bool, str]: ...

    @classmethod
    def required_env_vars(cls) -> list[str]: ...


class AdapterRegistry:
    """
    Central registry of adapter plugins.

    Class attributes:
        _plugins: Plugin name -> plugin class
    """

    _plugins: dict[str, type] = {}

    @classmethod
    def register(cls, plugin_class: type) -> type:
        """
        Decorator that registers a plugin class.

        Raises:
            AttributeError: If the class lacks a required class method
            ValueError: If adapter_kind() is not "api" or "session"
        """
        required_methods = [
            "plugin_name",
            "adapter_kind",
            "create_adapter",
            "validate_config",
            "required_env_vars",
        ]
        for method in required_methods:
            if not hasattr(plugin_class, method):
                raise AttributeError(
                    f"Plugin {plugin_class.__name__} missing required method: {method}"
                )

        kind = plugin_class.adapter_kind()
        if kind not in ADAPTER_KINDS:
            raise ValueError(
                f"Plugin {plugin_class.__name__} has invalid adapter kind '{kind}'"
            )

        name = plugin_class.plugin_name()
        if name in cls._plugins:
            logger.warning(
                f"Adapter plugin '{name}' already registered. "
                f"Overwriting with {plugin_class.__name__}"
            )

        cls._plugins[name] = plugin_class
        logger.debug(f"Registered adapter plugin: {name} ({plugin_class.__name__})")
        return plugin_class

    @classmethod
    def get_plugin(cls, plugin_name: str) -> type:
        """
        Raises:
            ValueError: If the plugin is not registered
        """
        if plugin_name not in cls._plugins:
            available = ", ".join(sorted(cls._plugins)) or "none"
            raise ValueError(
                f"Unknown surface adapter: '{plugin_name}'. Available adapters: {available}"
            )
        return cls._plugins[plugin_name]

    @classmethod
    def is_registered(cls, plugin_name: str) -> bool:
        return plugin_name in cls._plugins

    @classmethod
    def validate(cls, plugin_name: str, config: dict) -> None:
        """
        Validate an adapter config without creating the adapter.

        Raises:
            ValueError: If the plugin is unknown or the config is invalid
        """
        plugin = cls.get_plugin(plugin_name)
        is_valid, error_msg = plugin.validate_config(config)
        if not is_valid:
            raise ValueError(f"Invalid configuration for {plugin_name}: {error_msg}")

    @classmethod
    def create_adapter(cls, plugin_name: str, config: dict) -> SurfaceAdapter:
        """
        Create an adapter from plugin name and resolved config.

        Raises:
            ValueError: If the plugin is unknown or the config is invalid
        """
        cls.validate(plugin_name, config)
        logger.debug(f"Creating surface adapter: {plugin_name}")
        return cls.get_plugin(plugin_name).create_adapter(config)

    @classmethod
    def adapter_kind(cls, plugin_name: str) -> str:
        return cls.get_plugin(plugin_name).adapter_kind()

    @classmethod
    def list_plugins(cls) -> list[dict]:
        """
        Describe registered plugins.

        Returns:
            list[dict]: name, kind, required_env_vars, class_name per plugin
        """
        return [
            {
                "name": name,
                "kind": plugin.adapter_kind(),
                "required_env_vars": plugin.required_env_vars(),
                "class_name": plugin.__name__,
            }
            for name, plugin in sorted(cls._plugins.items())
        ]
