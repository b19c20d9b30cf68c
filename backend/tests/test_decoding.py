"""
Tests for weakly typed configuration decoding.

Covers field matching, primitive coercion, the comma separated list hook,
nested merging and atomic failure.
"""

from typing import Dict, List, Literal, Optional, Tuple

import pytest
from hypothesis import given, strategies as st
from pydantic import BaseModel, Field

from embedded_plugins.decoding import decode_config
from embedded_plugins.errors import ConfigDecodeError, ConfigDecoderError


class Limits(BaseModel):
    burst: int = 10
    average: float = 1.5
    enabled: bool = False


class Strategy(BaseModel):
    timeout: str = '1m'


class SampleConfig(BaseModel):
    name: str = 'default'
    tags: List[str] = Field(default_factory=lambda: ['base'])
    trusted_ips: List[str] = Field(default_factory=list)
    port: int = 80
    ratio: float = 0.5
    enabled: bool = True
    limits: Limits = Field(default_factory=Limits)
    strategy: Optional[Strategy] = None
    labels: Dict[str, str] = Field(default_factory=lambda: {'team': 'edge'})
    codes: Tuple[int, ...] = (403,)
    mode: Literal['live', 'none'] = 'live'


class TestFieldMatching:
    """Bag keys find their fields regardless of casing style."""

    def test_exact_and_case_insensitive(self):
        cfg = decode_config({'Name': 'a', 'PORT': 8080}, SampleConfig())
        assert cfg.name == 'a'
        assert cfg.port == 8080

    def test_camel_case_matches_snake_case(self):
        cfg = decode_config({'trustedIPs': ['10.0.0.0/8']}, SampleConfig())
        assert cfg.trusted_ips == ['10.0.0.0/8']

    def test_unknown_keys_are_ignored(self):
        cfg = decode_config({'name': 'x', 'doesNotExist': {'deep': 1}}, SampleConfig())
        assert cfg.name == 'x'

    def test_exact_match_wins_over_case_insensitive(self):
        cfg = decode_config({'NAME': 'upper', 'name': 'exact'}, SampleConfig())
        assert cfg.name == 'exact'

    def test_alias_is_matched(self):
        class Aliased(BaseModel):
            lapi_key: str = Field('', alias='crowdsecLapiKey')

        cfg = decode_config({'CrowdsecLapiKey': 'secret'}, Aliased())
        assert cfg.lapi_key == 'secret'


class TestWeakCoercion:
    """Loosely typed scalars are converted to the field type."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("8080", 8080), ("0x10", 16), ("", 0), (True, 1), (False, 0), (12.9, 12), (7, 7)],
    )
    def test_int_fields(self, raw, expected):
        assert decode_config({'port': raw}, SampleConfig()).port == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [("true", True), ("T", True), ("1", True), ("FALSE", False), ("0", False), ("", False), (0, False), (2, True)],
    )
    def test_bool_fields(self, raw, expected):
        assert decode_config({'enabled': raw}, SampleConfig()).enabled is expected

    @pytest.mark.parametrize("raw,expected", [("2.5", 2.5), ("", 0.0), (3, 3.0), (True, 1.0)])
    def test_float_fields(self, raw, expected):
        assert decode_config({'ratio': raw}, SampleConfig()).ratio == expected

    @pytest.mark.parametrize("raw,expected", [(42, "42"), (True, "1"), (False, "0"), (2.0, "2"), (2.5, "2.5")])
    def test_string_fields(self, raw, expected):
        assert decode_config({'name': raw}, SampleConfig()).name == expected

    def test_unparseable_bool_fails(self):
        with pytest.raises(ConfigDecodeError) as excinfo:
            decode_config({'enabled': 'maybe'}, SampleConfig())
        assert 'enabled' in str(excinfo.value)

    def test_unparseable_int_fails(self):
        with pytest.raises(ConfigDecodeError):
            decode_config({'port': 'eighty'}, SampleConfig())

    @pytest.mark.parametrize("raw", [float('inf'), float('-inf'), float('nan')])
    def test_non_finite_float_for_int_fails(self, raw):
        with pytest.raises(ConfigDecodeError) as excinfo:
            decode_config({'port': raw}, SampleConfig())
        assert excinfo.value.errors == [f"port: cannot convert {raw!r} to an integer"]


class TestSequenceFields:
    """List-typed fields accept delimited strings and lone scalars."""

    def test_comma_separated_string(self):
        cfg = decode_config({'Name': 'a', 'Tags': 'x,y,z'}, SampleConfig())
        assert cfg.name == 'a'
        assert cfg.tags == ['x', 'y', 'z']

    def test_split_does_not_trim(self):
        assert decode_config({'tags': 'x, y'}, SampleConfig()).tags == ['x', ' y']

    def test_empty_string_is_empty_list(self):
        assert decode_config({'tags': ''}, SampleConfig()).tags == []

    def test_single_scalar_becomes_list(self):
        assert decode_config({'tags': 5}, SampleConfig()).tags == ['5']

    def test_list_replaces_default(self):
        assert decode_config({'tags': ['p', 'q']}, SampleConfig()).tags == ['p', 'q']

    def test_elements_are_coerced(self):
        assert decode_config({'codes': '401,403'}, SampleConfig()).codes == (401, 403)

    def test_custom_separator(self):
        assert decode_config({'tags': 'a;b'}, SampleConfig(), separator=';').tags == ['a', 'b']

    def test_non_empty_map_for_list_fails(self):
        with pytest.raises(ConfigDecodeError):
            decode_config({'tags': {'a': 1}}, SampleConfig())


class TestNestedAndMaps:
    """Nested models and dicts merge over existing values."""

    def test_nested_model_merges_defaults(self):
        cfg = decode_config({'limits': {'Burst': '50'}}, SampleConfig())
        assert cfg.limits.burst == 50
        assert cfg.limits.average == 1.5

    def test_optional_nested_model_starts_from_its_defaults(self):
        cfg = decode_config({'strategy': {}}, SampleConfig())
        assert cfg.strategy == Strategy()

    def test_list_of_maps_is_merged(self):
        cfg = decode_config({'limits': [{'burst': 1}, {'average': '9'}]}, SampleConfig())
        assert cfg.limits.burst == 1
        assert cfg.limits.average == 9.0

    def test_dict_field_merges(self):
        cfg = decode_config({'labels': {'tier': 1}}, SampleConfig())
        assert cfg.labels == {'team': 'edge', 'tier': '1'}

    def test_literal_left_to_validation(self):
        assert decode_config({'mode': 'none'}, SampleConfig()).mode == 'none'
        with pytest.raises(ConfigDecodeError):
            decode_config({'mode': 'stream'}, SampleConfig())

    def test_none_for_optional_field(self):
        cfg = decode_config({'strategy': None}, SampleConfig(strategy=Strategy()))
        assert cfg.strategy is None


class TestFailureIsAtomic:
    """A bad bag produces nothing and leaves the defaults alone."""

    def test_map_for_scalar_fails(self):
        with pytest.raises(ConfigDecodeError) as excinfo:
            decode_config({'name': {'nested': 'value'}}, SampleConfig())
        assert excinfo.value.errors == ['name: expected a string, got map']

    def test_all_errors_are_reported(self):
        with pytest.raises(ConfigDecodeError) as excinfo:
            decode_config({'name': {}, 'port': 'x', 'limits': 'flat'}, SampleConfig())
        assert len(excinfo.value.errors) == 3

    def test_default_config_is_not_mutated(self):
        target = SampleConfig()
        decode_config({'name': 'changed', 'limits': {'burst': 99}}, target)
        assert target.name == 'default'
        assert target.limits.burst == 10

    def test_failed_decode_does_not_touch_target(self):
        target = SampleConfig()
        with pytest.raises(ConfigDecodeError):
            decode_config({'name': 'changed', 'port': []}, target)
        assert target.name == 'default'

    def test_non_model_target_is_a_decoder_error(self):
        with pytest.raises(ConfigDecoderError):
            decode_config({'a': 1}, {'a': 0})

    def test_empty_separator_is_a_decoder_error(self):
        with pytest.raises(ConfigDecoderError):
            decode_config({'tags': 'a'}, SampleConfig(), separator='')

    def test_non_mapping_bag_fails(self):
        with pytest.raises(ConfigDecodeError):
            decode_config(['name'], SampleConfig())


class TestDecodingProperties:
    """Property-based checks for the list hook and integer coercion."""

    @given(st.lists(st.text(alphabet=st.characters(exclude_characters=','), min_size=1), min_size=1))
    def test_joined_string_splits_back(self, items):
        cfg = decode_config({'tags': ','.join(items)}, SampleConfig())
        assert cfg.tags == items

    @given(st.integers(min_value=-10**12, max_value=10**12))
    def test_numeric_strings_become_ints(self, value):
        assert decode_config({'port': str(value)}, SampleConfig()).port == value
