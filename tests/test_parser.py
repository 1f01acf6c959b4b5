"""Tests for topology parsing."""

import pytest

from darknet_yolo.errors import ConfigError
from darknet_yolo.model.config import BlockKind, NetworkSettings
from darknet_yolo.model.parser import parse_cfg, parse_setting, parse_value, read_cfg

MINIMAL = """
[net]
width=32
height=32
channels=3

[convolutional]
size=3,3
filters=16
"""


class TestParseValue:
    def test_integer(self):
        value = parse_value("16")
        assert value == 16
        assert isinstance(value, int)

    def test_negative_integer(self):
        assert parse_value("-3") == -3

    def test_float(self):
        value = parse_value(".7")
        assert value == pytest.approx(0.7)
        assert isinstance(value, float)

    def test_alphabetic_stays_string(self):
        assert parse_value("leaky") == "leaky"

    def test_strips_whitespace(self):
        assert parse_value(" 4 ") == 4

    def test_garbage(self):
        with pytest.raises(ConfigError):
            parse_value("3x3")


class TestParseSetting:
    def test_array_keeps_integer_type(self):
        key, value = parse_setting("size=3,3")
        assert key == "size"
        assert value == [3, 3]
        assert all(isinstance(v, int) for v in value)

    def test_scalar(self):
        assert parse_setting("filters=16") == ("filters", 16)

    def test_missing_equals(self):
        with pytest.raises(ConfigError):
            parse_setting("filters 16")

    def test_empty_value(self):
        with pytest.raises(ConfigError):
            parse_setting("filters=")


class TestParseCfg:
    def test_blocks_in_order(self):
        blocks = parse_cfg(MINIMAL)
        assert [b.kind for b in blocks] == [BlockKind.NET, BlockKind.CONVOLUTIONAL]
        assert blocks[1].settings == {"size": [3, 3], "filters": 16}
        assert isinstance(blocks[1].settings["filters"], int)

    def test_comments_and_blank_lines_ignored(self):
        text = "# header comment\n\n[net]\n# inside\nwidth=8\n\n[maxpool]\nsize=2\n"
        blocks = parse_cfg(text)
        assert blocks[0].settings == {"width": 8}
        assert blocks[1].settings == {"size": 2}

    def test_network_alias(self):
        blocks = parse_cfg("[network]\nwidth=8\n[upsample]\nstride=2\n")
        assert blocks[0].kind is BlockKind.NET

    def test_header_line_recorded(self):
        blocks = parse_cfg(MINIMAL)
        assert blocks[1].line == 7

    def test_unterminated_header(self):
        with pytest.raises(ConfigError, match="unterminated"):
            parse_cfg("[net\nwidth=8\n")

    def test_unknown_block(self):
        with pytest.raises(ConfigError, match="Unknown block kind"):
            parse_cfg("[net]\nwidth=8\n[bogus]\nx=1\n")

    def test_malformed_line(self):
        with pytest.raises(ConfigError, match="Line 3"):
            parse_cfg("[net]\nwidth=8\nheight\n[upsample]\n")

    def test_setting_before_block(self):
        with pytest.raises(ConfigError):
            parse_cfg("width=8\n[net]\n")

    def test_first_block_must_be_net(self):
        with pytest.raises(ConfigError, match="First block"):
            parse_cfg("[convolutional]\nsize=1\n[net]\n")

    def test_no_layers(self):
        with pytest.raises(ConfigError):
            parse_cfg("[net]\nwidth=8\n")

    def test_read_cfg(self, tmp_path):
        path = tmp_path / "model.cfg"
        path.write_text(MINIMAL)
        blocks = read_cfg(path)
        assert len(blocks) == 2


class TestNetworkSettings:
    def test_from_block(self):
        net = NetworkSettings.from_block(parse_cfg(MINIMAL)[0])
        assert (net.width, net.height, net.channels, net.batch) == (32, 32, 3, 1)

    def test_missing_width(self):
        block = parse_cfg("[net]\nheight=8\nchannels=3\n[upsample]\n")[0]
        with pytest.raises(ConfigError, match="width"):
            NetworkSettings.from_block(block)
