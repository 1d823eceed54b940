"""
Hierarchical Configuration Manager for SpatialQC
================================================

Implements a hierarchical configuration system with inheritance:
base → environment → user file → local overrides

Every layer is YAML. The merged result is validated with JSON schema and
then turned into typed criteria, performance settings and rules.
"""

import json
import logging
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import jsonschema
import yaml

from .criteria import (
    ATTRIBUTE_CHECKS,
    ATTRIBUTE_RELATION_CASES,
    INDEX_STRATEGIES,
    RELATION_CASES,
    GeometryCriteria,
    PerformanceSettings,
    RuleSet,
)
from .exceptions import ConfigurationError


@dataclass
class RunConfiguration:
    """Typed configuration of one validation run."""

    criteria: GeometryCriteria
    performance: PerformanceSettings
    rules: RuleSet
    logging: Dict[str, Any]


class ConfigurationManager:
    """
    Hierarchical configuration manager with inheritance and validation.

    Configuration hierarchy (highest to lowest priority):
    1. Local overrides (runtime/CLI)
    2. User configuration file
    3. Environment config (development/testing/production)
    4. Base config (defaults)

    Attributes:
        base_config (Dict[str, Any]): Base configuration
        environment_config (Dict[str, Any]): Environment-specific configuration
        user_config (Dict[str, Any]): Configuration from an explicit file
        schema (Dict[str, Any]): JSON schema for validation
        logger (logging.Logger): Logger instance
    """

    def __init__(
        self,
        config_dir: Optional[Union[str, Path]] = None,
        environment: str = "development",
        config_file: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize configuration manager.

        Args:
            config_dir: Directory containing base.yaml, environments/ and schema.json
            environment: Environment name (development/testing/production)
            config_file: Optional user configuration file

        Raises:
            ConfigurationError: If configuration loading fails
        """
        self.config_dir = Path(config_dir) if config_dir else None
        self.environment = environment
        self.logger = logging.getLogger(__name__)

        self.base_config: Dict[str, Any] = {}
        self.environment_config: Dict[str, Any] = {}
        self.user_config: Dict[str, Any] = {}
        self.schema: Optional[Dict[str, Any]] = None

        try:
            self._load_configurations(config_file)
            self._load_schema()
            self.logger.info(f"Configuration manager initialized for environment: {environment}")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize configuration manager: {e}")

    def _load_configurations(self, config_file: Optional[Union[str, Path]]) -> None:
        """Load all configuration files in hierarchical order."""
        base_file = self.config_dir / "base.yaml" if self.config_dir else None
        if base_file is not None and base_file.exists():
            self.base_config = self._deep_merge(
                self._get_default_base_config(), self._load_yaml_file(base_file)
            )
            self.logger.info(f"Loaded base configuration: {base_file}")
        else:
            self.logger.debug("Base configuration not found, using built-in defaults")
            self.base_config = self._get_default_base_config()

        if self.config_dir:
            env_file = self.config_dir / f"environments/{self.environment}.yaml"
            if env_file.exists():
                self.environment_config = self._load_yaml_file(env_file)
                self.logger.info(f"Loaded environment configuration: {env_file}")
            else:
                self.logger.debug(f"Environment configuration not found: {env_file}")

        if config_file:
            path = Path(config_file)
            if not path.exists():
                raise ConfigurationError(f"Configuration file not found: {path}")
            self.user_config = self._load_yaml_file(path)
            self.logger.info(f"Loaded user configuration: {path}")

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """Load and parse YAML file."""
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load {file_path}: {e}")
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(f"Top level of {file_path} must be a mapping")
        return content

    def _load_schema(self) -> None:
        """Load JSON schema for configuration validation."""
        schema_file = self.config_dir / "schema.json" if self.config_dir else None
        if schema_file is not None and schema_file.exists():
            try:
                with open(schema_file, "r", encoding="utf-8") as f:
                    self.schema = json.load(f)
                self.logger.info("Loaded configuration schema")
            except (OSError, ValueError) as e:
                self.logger.warning(f"Failed to load schema: {e}")
                self.schema = self._get_default_schema()
        else:
            self.schema = self._get_default_schema()

    def get_config(self, local_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Get the merged and validated configuration.

        Args:
            local_overrides: Optional local configuration overrides

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigurationError: If the merged configuration is invalid
        """
        config = deepcopy(self.base_config)
        config = self._deep_merge(config, self.environment_config)
        config = self._deep_merge(config, self.user_config)
        if local_overrides:
            config = self._deep_merge(config, local_overrides)

        self._validate_config(config)
        self.logger.debug(f"Generated configuration for environment {self.environment}")
        return config

    def build_run_configuration(
        self, local_overrides: Optional[Dict[str, Any]] = None
    ) -> RunConfiguration:
        """
        Get the merged configuration as typed objects.

        Args:
            local_overrides: Optional local configuration overrides

        Returns:
            RunConfiguration with criteria, performance settings and rules

        Raises:
            ConfigurationError: If any section is invalid
        """
        config = self.get_config(local_overrides)
        performance = dict(config.get("performance", {}))
        if "strategy" in config.get("index", {}):
            performance["index_strategy"] = config["index"]["strategy"]
        return RunConfiguration(
            criteria=GeometryCriteria.from_dict(config.get("criteria")).validate(),
            performance=PerformanceSettings.from_dict(performance).validate(),
            rules=RuleSet.from_dict(config.get("rules")),
            logging=config.get("logging", {}),
        )

    def _deep_merge(self, base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries, with overlay taking precedence.

        Args:
            base: Base dictionary
            overlay: Overlay dictionary

        Returns:
            Merged dictionary
        """
        result = deepcopy(base)

        for key, value in overlay.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = deepcopy(value)

        return result

    def _validate_config(self, config: Dict[str, Any]) -> None:
        """
        Validate configuration against JSON schema.

        Raises:
            ConfigurationError: If validation fails
        """
        if self.schema is None:
            self.logger.warning("No schema available for validation")
            return

        try:
            jsonschema.validate(config, self.schema)
        except jsonschema.ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigurationError(f"Configuration validation failed at {location}: {e.message}")
        except jsonschema.SchemaError as e:
            raise ConfigurationError(f"Invalid schema: {e.message}")

    def _get_default_base_config(self) -> Dict[str, Any]:
        """Get default base configuration."""
        return {
            "criteria": {
                "min_line_length": 0.01,
                "min_polygon_area": 1.0,
                "overlap_tolerance": 0.001,
                "duplicate_tolerance": 0.001,
                "sliver_area": 2.0,
                "sliver_shape_index": 0.1,
                "sliver_elongation": 10.0,
                "spike_angle_threshold": 10.0,
                "report_all_spikes": False,
                "ring_closure_tolerance": 1e-8,
                "network_search_distance": 0.1,
                "endpoint_snap_tolerance": 1e-8,
                "line_within_polygon_tolerance": 0.001,
                "polygon_within_polygon_tolerance": 0.001,
                "line_connectivity_tolerance": 1.0,
            },
            "performance": {
                "min_workers": 1,
                "resource_sampling_interval": 2.0,
                "cpu_limit_percent": 80.0,
                "memory_limit_percent": 80.0,
                "high_memory_percent": 90.0,
                "batch_size": 1000,
            },
            "index": {"strategy": "grid"},
            "rules": {},
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        }

    def _get_default_schema(self) -> Dict[str, Any]:
        """Get default JSON schema for configuration validation."""
        number = {"type": "number", "minimum": 0}
        percent = {"type": "number", "exclusiveMinimum": 0, "maximum": 100}
        return {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "properties": {
                "criteria": {
                    "type": "object",
                    "properties": {
                        "min_line_length": number,
                        "min_polygon_area": number,
                        "overlap_tolerance": number,
                        "duplicate_tolerance": number,
                        "sliver_area": number,
                        "sliver_shape_index": {"type": "number", "minimum": 0, "maximum": 1},
                        "sliver_elongation": number,
                        "spike_angle_threshold": {
                            "type": "number",
                            "exclusiveMinimum": 0,
                            "exclusiveMaximum": 180,
                        },
                        "report_all_spikes": {"type": "boolean"},
                        "ring_closure_tolerance": number,
                        "network_search_distance": number,
                        "endpoint_snap_tolerance": number,
                        "line_within_polygon_tolerance": number,
                        "polygon_within_polygon_tolerance": number,
                        "line_connectivity_tolerance": number,
                    },
                    "additionalProperties": False,
                },
                "performance": {
                    "type": "object",
                    "properties": {
                        "min_workers": {"type": "integer", "minimum": 1},
                        "max_workers": {"type": "integer", "minimum": 1},
                        "resource_sampling_interval": {"type": "number", "exclusiveMinimum": 0},
                        "cpu_limit_percent": percent,
                        "memory_limit_percent": percent,
                        "high_memory_percent": percent,
                        "batch_size": {"type": "integer", "minimum": 1},
                        "index_strategy": {"type": "string", "enum": list(INDEX_STRATEGIES)},
                        "history_file": {"type": ["string", "null"]},
                    },
                    "additionalProperties": False,
                },
                "index": {
                    "type": "object",
                    "properties": {"strategy": {"type": "string", "enum": list(INDEX_STRATEGIES)}},
                },
                "rules": {
                    "type": "object",
                    "properties": {
                        "tables": {
                            "type": "array",
                            "items": {"type": "object", "required": ["table"]},
                        },
                        "relations": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["case", "main_table", "related_table"],
                                "properties": {"case": {"enum": list(RELATION_CASES)}},
                            },
                        },
                        "attributes": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["table", "field", "check"],
                                "properties": {"check": {"enum": list(ATTRIBUTE_CHECKS)}},
                            },
                        },
                        "attribute_relations": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["case", "main_table", "field"],
                                "properties": {"case": {"enum": list(ATTRIBUTE_RELATION_CASES)}},
                            },
                        },
                    },
                },
                "logging": {
                    "type": "object",
                    "properties": {
                        "level": {
                            "type": "string",
                            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        },
                        "format": {"type": "string"},
                    },
                },
            },
        }
