from .knowledge_base import EmbeddingConfig, KnowledgeBaseConfig
from .main import Config, StorageConfig
from .utils import load_config, read_yaml, validate_config

__all__ = [
    "Config",
    "StorageConfig",
    "KnowledgeBaseConfig",
    "EmbeddingConfig",
    "load_config",
    "read_yaml",
    "validate_config",
]
