"""vevpd.io - パラメータファイル I/O."""

from vevpd.io.parameter_file import build_config, parse_parameter_text, read_parameter_file

__all__ = [
    "build_config",
    "parse_parameter_text",
    "read_parameter_file",
]
