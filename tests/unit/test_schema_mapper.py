"""
Unit tests for schema mapping strategies
"""

import json

import pytest
import yaml

from shadowrepl.exceptions import ConfigurationError, MappingNotFoundError
from shadowrepl.models.config import SchemaOverridesConfig
from shadowrepl.models.schema import DestinationSchema
from shadowrepl.services.schema_mapper import (
    MULTIPLE_OVERRIDES_MESSAGE,
    IdentityMapper,
    OverridesMapper,
    SessionMapper,
    build_schema_mapper,
    parse_override_pairs,
    synthetic_key_value
)


class TestIdentityMapper:
    """Test identity mapping"""

    def test_names_pass_through(self, destination_schema):
        mapper = IdentityMapper(destination_schema)
        assert mapper.map_table("cart") == "cart"
        assert mapper.map_column("cart", "qty") == "qty"
        assert mapper.shard_key_column("cart") is None

    def test_resolve(self, destination_schema):
        mapping = IdentityMapper(destination_schema).resolve("cart")
        assert mapping.destination_table == "cart"
        assert [pair.source_column for pair in mapping.columns] == ["id", "name", "qty"]
        assert mapping.primary_key == ("id",)
        assert mapping.columns[2].destination_type == "int"

    def test_unknown_table(self, destination_schema):
        mapper = IdentityMapper(destination_schema)
        with pytest.raises(MappingNotFoundError):
            mapper.shard_key_column("missing")
        with pytest.raises(MappingNotFoundError):
            mapper.resolve("missing")

    def test_column_type(self, destination_schema):
        mapper = IdentityMapper(destination_schema)
        assert mapper.column_type("orders", "total") == "decimal"
        assert mapper.key_columns("orders") == ["id"]
        with pytest.raises(MappingNotFoundError):
            mapper.column_type("orders", "missing")


class TestStringOverrides:
    """Test inline table and column overrides"""

    def test_table_override(self, destination_schema):
        mapper = OverridesMapper.from_strings("[{src,dest}]", "", destination_schema)
        assert mapper.map_table("src") == "dest"
        assert mapper.map_table("cart") == "cart"
        assert mapper.source_table_name("dest") == "src"

    def test_column_override(self, destination_schema):
        mapper = OverridesMapper.from_strings("[{src,dest}]", "[{src.label_old,src.label}]", destination_schema)
        assert mapper.map_column("src", "label_old") == "label"
        assert mapper.map_column("src", "id") == "id"

        mapping = mapper.resolve("src")
        assert mapping.destination_table == "dest"
        assert [(pair.source_column, pair.destination_column) for pair in mapping.columns] == [
            ("id", "id"), ("label_old", "label")]

    def test_column_override_table_mismatch(self, destination_schema):
        with pytest.raises(ConfigurationError, match="must be same"):
            OverridesMapper.from_strings("", "[{cart.name,orders.name}]", destination_schema)

    def test_column_override_requires_table(self, destination_schema):
        with pytest.raises(ConfigurationError):
            OverridesMapper.from_strings("", "[{name,title}]", destination_schema)

    @pytest.mark.parametrize("value", ["src,dest", "[{src}]", "[{a,b}{c}]", "[{a,b},{a,c}]"])
    def test_invalid_syntax(self, value):
        with pytest.raises(ConfigurationError):
            parse_override_pairs(value, "table overrides")

    def test_parse_pairs(self):
        assert parse_override_pairs("[{a,b}, {c, d}]", "table overrides") == [("a", "b"), ("c", "d")]
        assert parse_override_pairs("", "table overrides") == []


class TestFileOverrides:
    """Test overrides loaded from a file"""

    def test_json_file(self, tmp_path, destination_schema):
        path = tmp_path / "overrides.json"
        path.write_text(json.dumps({
            "renamedTables": {"src": "dest"},
            "renamedColumns": {"src": {"label_old": "label"}}
        }))
        mapper = OverridesMapper.from_file(str(path), destination_schema)
        assert mapper.map_table("src") == "dest"
        assert mapper.map_column("src", "label_old") == "label"
        assert mapper.map_table("orders") == "orders"

    def test_yaml_file(self, tmp_path, destination_schema):
        path = tmp_path / "overrides.yaml"
        path.write_text(yaml.safe_dump({"renamedTables": {"src": "dest"}}))
        assert OverridesMapper.from_file(str(path), destination_schema).map_table("src") == "dest"

    def test_invalid_file(self, tmp_path, destination_schema):
        path = tmp_path / "overrides.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            OverridesMapper.from_file(str(path), destination_schema)

    def test_missing_file(self, tmp_path, destination_schema):
        with pytest.raises(ConfigurationError):
            OverridesMapper.from_file(str(tmp_path / "missing.json"), destination_schema)

    def test_wrong_shape(self, tmp_path, destination_schema):
        path = tmp_path / "overrides.json"
        path.write_text(json.dumps({"renamedTables": ["src", "dest"]}))
        with pytest.raises(ConfigurationError):
            OverridesMapper.from_file(str(path), destination_schema)


class TestSessionMapper:
    """Test session-file mapping"""

    def test_sharded_session(self, session_schema, session_document):
        mapper = SessionMapper(session_schema, session_document)
        assert mapper.map_table("cart") == "cart"
        assert mapper.shard_key_column("cart") == "migration_shard_id"
        assert mapper.map_column("cart", "legacy_flag") is None

    def test_resolve_drops_unmapped_columns(self, session_schema, session_document):
        mapping = SessionMapper(session_schema, session_document).resolve("cart")
        assert [pair.source_column for pair in mapping.columns] == ["id", "name"]
        assert mapping.shard_key_column == "migration_shard_id"
        assert mapping.primary_key == ("migration_shard_id", "id")

    def test_dropped_table(self, session_schema, session_document):
        mapper = SessionMapper(session_schema, session_document)
        assert mapper.is_table_dropped("audit_log")
        assert not mapper.is_table_dropped("cart")
        with pytest.raises(MappingNotFoundError):
            mapper.map_table("audit_log")

    def test_unknown_tables(self, session_schema, session_document):
        mapper = SessionMapper(session_schema, session_document)
        with pytest.raises(MappingNotFoundError):
            mapper.map_table("missing")
        with pytest.raises(MappingNotFoundError):
            mapper.shard_key_column("missing")

    def test_synthetic_key_column(self, session_schema, session_document):
        mapper = SessionMapper(session_schema, session_document)
        assert mapper.synthetic_key_column("events") == "synth_id"
        assert mapper.synthetic_key_column("cart") is None

    def test_malformed_session(self, session_schema):
        with pytest.raises(ConfigurationError):
            SessionMapper(session_schema, {"SrcSchema": {}})

    def test_from_file(self, tmp_path, session_schema, session_document):
        path = tmp_path / "session.json"
        path.write_text(json.dumps(session_document))
        assert SessionMapper.from_file(str(path), session_schema).map_table("cart") == "cart"


class TestBuildSchemaMapper:
    """Test strategy selection"""

    def test_default_is_identity(self, destination_schema):
        mapper = build_schema_mapper(SchemaOverridesConfig(), destination_schema)
        assert isinstance(mapper, IdentityMapper)
        assert mapper.map_table("cart") == "cart"

    def test_explicit_identity(self, destination_schema):
        mapper = build_schema_mapper(SchemaOverridesConfig(identity_mapping=True), destination_schema)
        assert isinstance(mapper, IdentityMapper)

    def test_string_overrides(self, destination_schema):
        mapper = build_schema_mapper(SchemaOverridesConfig(table_overrides="[{src,dest}]"), destination_schema)
        assert mapper.map_table("src") == "dest"
        assert mapper.map_table("cart") == "cart"

    def test_session(self, tmp_path, session_schema, session_document):
        path = tmp_path / "session.json"
        path.write_text(json.dumps(session_document))
        mapper = build_schema_mapper(SchemaOverridesConfig(session_file=str(path)), session_schema)
        assert isinstance(mapper, SessionMapper)

    @pytest.mark.parametrize("kwargs", [
        {"session_file": "session.json", "table_overrides": "[{a,b}]"},
        {"schema_overrides_file": "overrides.json", "column_overrides": "[{a.b,a.c}]"},
        {"session_file": "session.json", "schema_overrides_file": "overrides.json"},
        {"identity_mapping": True, "table_overrides": "[{a,b}]"},
    ])
    def test_only_one_override_source(self, destination_schema, kwargs):
        with pytest.raises(ConfigurationError) as exc_info:
            build_schema_mapper(SchemaOverridesConfig(**kwargs), destination_schema)
        assert MULTIPLE_OVERRIDES_MESSAGE in str(exc_info.value)
        assert "Only one type of schema override can be specified" in str(exc_info.value)


class TestSyntheticKey:
    """Test synthetic key generation"""

    def test_deterministic(self):
        first = synthetic_key_value("events", {"payload": "a", "n": 1})
        second = synthetic_key_value("events", {"n": 1, "payload": "a"})
        assert first == second

    def test_depends_on_row_and_table(self):
        base = synthetic_key_value("events", {"payload": "a"})
        assert synthetic_key_value("events", {"payload": "b"}) != base
        assert synthetic_key_value("other", {"payload": "a"}) != base
