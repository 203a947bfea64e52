"""
schemabus
─────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from schemabus.tier0_core.logging import get_logger
from schemabus.tier0_core.errors import (
    SchemaBusError,
    NotFoundError,
    UpstreamError,
    RegistryError,
    IncompatibleSchemaError,
    TransportError,
    ValidationError,
    MalformedMessageError,
    InvalidSchemaError,
    ConfigurationError,
)
from schemabus.tier0_core.config import get_config, load_config, BusConfig

from schemabus.tier1_runtime.validate import SchemaValidator, compile_validator
from schemabus.tier1_runtime.serialize import encode_body, decode_body
from schemabus.tier1_runtime.retry import retry_policy

from schemabus.tier2_reliability.cache import SchemaCache

from schemabus.tier3_platform.registry import ApicurioRegistryClient, CompatibilityLevel

from schemabus.tier4_advanced.schemas import SchemaRegistry, InMemorySchemaRegistry
from schemabus.tier4_advanced.messaging import (
    SCHEMA_ID_HEADER,
    BrokerTransport,
    Delivery,
    Envelope,
    InMemoryBroker,
    Topology,
)
from schemabus.tier4_advanced.rabbit import RabbitTransport, connect
from schemabus.tier4_advanced.publisher import Publisher, PublishResult
from schemabus.tier4_advanced.subscriber import Subscriber, SubscriberState

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "SchemaBusError", "NotFoundError", "UpstreamError", "RegistryError",
    "IncompatibleSchemaError", "TransportError", "ValidationError",
    "MalformedMessageError", "InvalidSchemaError", "ConfigurationError",
    # config
    "get_config", "load_config", "BusConfig",
    # validate
    "SchemaValidator", "compile_validator",
    # serialize
    "encode_body", "decode_body",
    # retry
    "retry_policy",
    # cache
    "SchemaCache",
    # registry
    "ApicurioRegistryClient", "CompatibilityLevel",
    "SchemaRegistry", "InMemorySchemaRegistry",
    # messaging
    "SCHEMA_ID_HEADER", "BrokerTransport", "Delivery", "Envelope",
    "InMemoryBroker", "Topology", "RabbitTransport", "connect",
    # pub/sub
    "Publisher", "PublishResult", "Subscriber", "SubscriberState",
]
