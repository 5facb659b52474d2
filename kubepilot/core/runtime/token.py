"""Scraping of kubeadm output for the join token, CA hash and certificate key.

kubeadm prints these values as free text with no stable machine-readable form, so
every helper here fails with MalformedOutputError instead of guessing.
"""
import re
from dataclasses import dataclass

from kubepilot.core.exceptions import MalformedOutputError

CERTIFICATE_KEY_MARKER = 'Using certificate key:'
JOIN_COMMAND_MARKER = 'kubeadm join'
JOIN_COMMAND_END_MARKER = 'Please note'

TOKEN_FLAG = '--token'
CA_CERT_HASH_FLAG = '--discovery-token-ca-cert-hash'
CERTIFICATE_KEY_FLAG = '--certificate-key'

CERTIFICATE_KEY_LENGTH = 64

_HEX_PATTERN = re.compile(r'^[0-9a-fA-F]+$')


@dataclass(frozen=True)
class JoinToken:
    token: str
    ca_cert_hash: str
    certificate_key: str | None = None


def validate_certificate_key(raw: str) -> str:
    key = raw[:CERTIFICATE_KEY_LENGTH]

    if len(key) != CERTIFICATE_KEY_LENGTH or not _HEX_PATTERN.match(key):
        raise MalformedOutputError(
            f'certificate key must be {CERTIFICATE_KEY_LENGTH} hex characters, got {raw!r}'
        )

    return key


def _value_after(tokens: list[str], flag: str) -> str | None:
    positions = [i for i, token in enumerate(tokens) if token == flag]

    if not positions:
        return None

    if len(positions) > 1:
        raise MalformedOutputError(f'join command contains {flag} more than once')

    index = positions[0] + 1
    if index >= len(tokens):
        raise MalformedOutputError(f'join command has no value after {flag}')

    return tokens[index]


def decode_join_command(text: str) -> JoinToken:
    tokens = [token.strip('\t\n\\ ').strip() for token in text.split()]
    tokens = [token for token in tokens if token]

    token = _value_after(tokens, TOKEN_FLAG)
    ca_cert_hash = _value_after(tokens, CA_CERT_HASH_FLAG)

    if not token or not ca_cert_hash:
        raise MalformedOutputError(f'join command does not contain {TOKEN_FLAG} and {CA_CERT_HASH_FLAG}: {text!r}')

    raw_key = _value_after(tokens, CERTIFICATE_KEY_FLAG)
    certificate_key = validate_certificate_key(raw_key) if raw_key is not None else None

    return JoinToken(token=token, ca_cert_hash=ca_cert_hash, certificate_key=certificate_key)


def _join_section(output: str, strict: bool) -> str:
    parts = output.split(JOIN_COMMAND_MARKER)

    if len(parts) < 2 or (strict and len(parts) != 2):
        raise MalformedOutputError(f'expected exactly one "{JOIN_COMMAND_MARKER}" in output: {output!r}')

    return parts[1].split(JOIN_COMMAND_END_MARKER)[0]


def parse_join_command(output: str) -> JoinToken:
    """Parses the output of `kubeadm token create --print-join-command`."""
    return decode_join_command(_join_section(output, strict=True))


def parse_init_output(output: str) -> JoinToken:
    """Parses `kubeadm init` output, whose first join command is the control-plane one."""
    return decode_join_command(_join_section(output, strict=False))


def parse_certificate_key(output: str) -> str:
    """Parses the output of `kubeadm init phase upload-certs --upload-certs`."""
    parts = output.split(CERTIFICATE_KEY_MARKER)

    if len(parts) != 2:
        raise MalformedOutputError(f'expected exactly one "{CERTIFICATE_KEY_MARKER}" in output: {output!r}')

    return validate_certificate_key(parts[1].replace('\r', '').replace('\n', '').strip())
