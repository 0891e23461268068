import os
import re
from dataclasses import asdict, dataclass, field, is_dataclass
from pathlib import Path
from typing import Any, Optional, Type, TypeVar, get_args, get_origin, get_type_hints

import yaml

T = TypeVar("T", bound="YamlSerializable")


class YamlSerializable:
    """
    A base class for dataclasses that provides methods to load from YAML
    and serialize back to YAML with key conversion between snake_case
    (used in Python) and camelCase (used in YAML).
    """

    @classmethod
    def load_from_yaml(cls: Type[T], yaml_content: str, base_path: Optional[Path] = None) -> T:
        """
        Load a YAML string with camelCase keys and convert it into an instance
        of the dataclass, mapping keys to snake_case.

        :param yaml_content: A YAML formatted string with camelCase keys.
        :param base_path: Optional base path for resolving relative paths.
        :return: An instance of the dataclass with values loaded from the YAML.
        """
        data = yaml.safe_load(yaml_content)
        data = resolve_env_vars(data)
        snake_case_data = cls._convert_keys_to_snake_case(data)
        return dataclass_loader(cls, snake_case_data, base_path=base_path)

    def serialize_to_yaml(self) -> str:
        """
        Serialize the dataclass instance into a YAML string with camelCase keys.

        :return: A YAML formatted string with camelCase keys.
        """
        instance_dict = asdict(self)
        camel_case_dict = self._convert_keys_to_camel_case(_stringify_paths(instance_dict))
        return yaml.dump(camel_case_dict, default_flow_style=False)

    @staticmethod
    def _camel_to_snake(name: str) -> str:
        s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
        s2 = re.sub("([a-z])([0-9])", r"\1_\2", s1)
        return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s2).lower()

    @staticmethod
    def _snake_to_camel(name: str) -> str:
        components = name.split("_")
        return components[0] + "".join(x[:1].upper() + x[1:] for x in components[1:])

    @classmethod
    def _convert_keys_to_snake_case(cls, d: Any) -> Any:
        if isinstance(d, dict):
            return {cls._camel_to_snake(k): cls._convert_keys_to_snake_case(v) for k, v in d.items()}
        elif isinstance(d, list):
            return [cls._convert_keys_to_snake_case(i) for i in d]
        else:
            return d

    @classmethod
    def _convert_keys_to_camel_case(cls, d: Any) -> Any:
        if isinstance(d, dict):
            return {cls._snake_to_camel(k): cls._convert_keys_to_camel_case(v) for k, v in d.items()}
        elif isinstance(d, list):
            return [cls._convert_keys_to_camel_case(i) for i in d]
        else:
            return d


def _stringify_paths(d: Any) -> Any:
    if isinstance(d, dict):
        return {k: _stringify_paths(v) for k, v in d.items()}
    elif isinstance(d, list):
        return [_stringify_paths(i) for i in d]
    elif isinstance(d, Path):
        return str(d)
    return d


class Registrable:
    discriminator: str = "type"

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if not hasattr(cls, "registry"):
            cls.registry = {}
        key = cls.__dict__.get(cls.discriminator)
        if isinstance(key, str) and key:
            cls.registry[key] = cls

    @classmethod
    def get_subclass(cls, key: str) -> Optional[Type["Registrable"]]:
        return cls.registry.get(key)


@dataclass(kw_only=True)
class PricingConfig(YamlSerializable):
    """
    Token prices per thousand tokens.
    """

    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0
    cached_input_cost_per_1k: float = 0.0


@dataclass(kw_only=True)
class LLMConfig(YamlSerializable, Registrable):
    """
    Represents the LLM configuration.
    """

    registry = {}

    type: str
    model_name: str
    model_max_tokens: int = 128000
    max_repeat: int = 3
    pricing: PricingConfig = field(default_factory=PricingConfig)


@dataclass(kw_only=True)
class AzureLLMConfig(LLMConfig):
    type: str = "azure"
    api_key: str
    api_version: str
    endpoint: str


@dataclass(kw_only=True)
class OpenAILLMConfig(LLMConfig):
    type: str = "openai"
    api_key: str
    base_url: Optional[str] = None


@dataclass(kw_only=True)
class ClientToolConfig(YamlSerializable):
    """
    A tool the caller executes itself. Calling it suspends the tool batch until the caller reports back.
    """

    name: str
    description: str = ""
    arguments: Optional[dict[str, dict[str, Any]]] = None
    timeout_seconds: int = 30

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Client tool name must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Timeout for client tool '{self.name}' must be positive")


@dataclass(kw_only=True)
class ToolConfig(YamlSerializable):
    """
    A server tool loaded from a python module.
    """

    name: str = ""
    function_name: str
    module_path: Path


@dataclass(kw_only=True)
class ConversationStoreConfig(YamlSerializable, Registrable):
    registry = {}

    type: str = "memory"


@dataclass(kw_only=True)
class InMemoryConversationStoreConfig(ConversationStoreConfig):
    type: str = "memory"


@dataclass(kw_only=True)
class FilesystemConversationStoreConfig(ConversationStoreConfig):
    type: str = "filesystem"
    directory: Path


@dataclass(kw_only=True)
class EngineConfig(YamlSerializable):
    """
    Represents the entire config file structure.
    """

    llm: LLMConfig
    tools: list[ToolConfig] = field(default_factory=list)
    client_tools: list[ClientToolConfig] = field(default_factory=list)
    max_iterations: int = 5
    streaming: bool = False
    max_budget: Optional[float] = None
    scope: str = "default"
    conversation_store: ConversationStoreConfig = field(default_factory=InMemoryConversationStoreConfig)


def resolve_env_vars(data):
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    elif isinstance(data, str):
        # Replace placeholders of the form ${VAR_NAME:default_value}
        pattern = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")
        for match in pattern.finditer(data):
            var, default = match.group(1), match.group(2)
            env_value = os.getenv(var, default)
            if env_value is None:
                raise ValueError(f"Environment variable '{var}' is not set and no default value provided.")
            data = data.replace(match.group(0), env_value)
        return data
    else:
        return data


def get_dataclass_subclass(base_class, data):
    if issubclass(base_class, Registrable):
        discriminator = base_class.discriminator
        if discriminator in data:
            key = data[discriminator]
            subclass = base_class.get_subclass(key)
            if subclass:
                return subclass
            else:
                raise ValueError(f"Unknown {base_class.__name__} type: {key}")
        else:
            raise ValueError(f"Discriminator '{discriminator}' not found in data for {base_class.__name__}")
    else:
        return base_class


def _unwrap_optional(field_type):
    if get_origin(field_type) is not None and type(None) in get_args(field_type):
        non_none = [arg for arg in get_args(field_type) if arg is not type(None)]
        if len(non_none) == 1:
            return non_none[0]
    return field_type


def dataclass_loader(dataclass_type, data, base_path: Optional[Path] = None):
    """Recursively loads YAML data into the appropriate dataclass."""
    dataclass_type = _unwrap_optional(dataclass_type)
    if is_dataclass(dataclass_type) and isinstance(data, dict):
        dataclass_type = get_dataclass_subclass(dataclass_type, data)
        field_types = get_type_hints(dataclass_type)
        init_fields = {name for name, f in dataclass_type.__dataclass_fields__.items() if f.init}
        return dataclass_type(
            **{
                key: dataclass_loader(field_types[key], value, base_path=base_path)
                for key, value in data.items()
                if key in init_fields
            }
        )
    elif get_origin(dataclass_type) is list and isinstance(data, list):
        list_type = get_args(dataclass_type)[0]
        return [dataclass_loader(list_type, item, base_path=base_path) for item in data]
    elif dataclass_type is Path and isinstance(data, str):
        path = Path(data)
        if not path.is_absolute() and base_path is not None:
            path = base_path / path
        return path
    else:
        return data


def load_config_from_yaml(config: str | Path, base_path: Optional[Path] = None) -> EngineConfig:
    """
    Loads the complete configuration from YAML content and maps it
    to the EngineConfig dataclass.

    :param config: If type string then loads from YAML string, if Path loads the file containing the configs.
    :param base_path: Base path to resolve relative paths.
    :return: An instance of the EngineConfig dataclass.
    """
    if isinstance(config, Path):
        with open(config) as f:
            config_content = f.read()
        if base_path is None:
            base_path = config.parent.resolve()
    else:
        config_content = config

    return EngineConfig.load_from_yaml(config_content, base_path=base_path)
