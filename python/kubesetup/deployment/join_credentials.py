"""
kubesetup/deployment/join_credentials.py

Extracts the JoinCredential from a freshly initialized first control plane.

Parsing is kept separate from transport (JoinOutputParser) so that the
format contract can be exercised on plain strings:
  - join command: `kubeadm join <addr> --token <t> --discovery-token-ca-cert-hash <h>`
  - certificate key: the last line of `kubeadm init phase upload-certs` output

Every extracted field is validated; anything malformed fails closed with a
ValidationError and never yields a partially populated credential.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from kubesetup.deployment.session import Session
from kubesetup.models.errors import ValidationError
from kubesetup.models.join import CERTIFICATE_KEY_RE, JoinCredential
from kubesetup.models.node import NodeAddress
from kubesetup.models.validator import build_model
from kubesetup.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

PRINT_JOIN_COMMAND = "kubeadm token create --print-join-command"
UPLOAD_CERTS_COMMAND = "kubeadm init phase upload-certs --upload-certs"


class JoinOutputParser(Protocol):
    def parse_join_command(self, output: str) -> JoinCredential: ...

    def parse_certificate_key(self, output: str) -> str: ...


class KubeadmOutputParser:
    """Parses kubeadm's textual output."""

    def parse_join_command(self, output: str) -> JoinCredential:
        """
        Parses the output of `kubeadm token create --print-join-command`.

        Raises:
            ValidationError: If the line is missing or any field is absent
                or malformed.
        """
        lines = [ln.strip() for ln in output.splitlines() if "kubeadm join" in ln]
        if not lines:
            raise ValidationError("no 'kubeadm join' command found in output")
        tokens = lines[-1].split()

        fields: Dict[str, Optional[str]] = {
            "api_address": _address_after_join(tokens),
            "token": _value_after(tokens, "--token"),
            "discovery_hash": _value_after(tokens, "--discovery-token-ca-cert-hash"),
        }
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise ValidationError(
                f"join command is missing {', '.join(missing)}: {lines[-1]}"
            )
        return build_model(JoinCredential, **fields)

    def parse_certificate_key(self, output: str) -> str:
        """
        Returns the last non-empty line of upload-certs output.

        Raises:
            ValidationError: If it is not 64 lowercase hex characters.
        """
        lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
        key = lines[-1] if lines else ""
        if not CERTIFICATE_KEY_RE.match(key):
            raise ValidationError(
                "could not extract a certificate key from upload-certs output"
            )
        return key


def _address_after_join(tokens: List[str]) -> Optional[str]:
    if "join" not in tokens:
        return None
    start = tokens.index("join") + 1
    if start < len(tokens) and not tokens[start].startswith("-"):
        return tokens[start]
    return None


def _value_after(tokens: List[str], flag: str) -> Optional[str]:
    for idx, tok in enumerate(tokens[:-1]):
        if tok == flag:
            return tokens[idx + 1]
    return None


class JoinCredentialExtractor:
    """
    Fetches join credentials from the first control plane.

    Args:
        session: The open session.
        parser: Output parser; KubeadmOutputParser by default.
        attempts: Tries for the print-join-command step.
        backoff: Base delay; attempt N waits N * backoff seconds.
    """

    def __init__(
        self,
        session: Session,
        parser: Optional[JoinOutputParser] = None,
        *,
        attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self.session = session
        self.parser: JoinOutputParser = parser or KubeadmOutputParser()
        self.attempts = attempts
        self.backoff = backoff

    async def _print_join_command(self, node: NodeAddress) -> str:
        @async_retry(retries=self.attempts, delay=self.backoff, noisy=True, linear_backoff=True)
        async def _attempt() -> str:
            return await self.session.run_checked(
                node,
                f"{node.sudo_prefix}{PRINT_JOIN_COMMAND}",
                description="kubeadm token create",
            )

        return await _attempt()

    async def extract(self, node: NodeAddress, *, control_plane: bool = False) -> JoinCredential:
        """
        Builds the JoinCredential; with `control_plane` also uploads the
        control-plane certificates and attaches their key (not retried).

        Raises:
            TransportError / RemoteCommandFailure: If the kubeadm commands fail.
            ValidationError: If their output is malformed.
        """
        logger.info("Extracting join credentials from %s", node)
        output = await self._print_join_command(node)
        credential = self.parser.parse_join_command(output)

        if control_plane:
            logger.info("Uploading control-plane certificates on %s", node)
            certs_output = await self.session.run_checked(
                node,
                f"{node.sudo_prefix}{UPLOAD_CERTS_COMMAND}",
                description="kubeadm upload-certs",
            )
            key = self.parser.parse_certificate_key(certs_output)
            credential = credential.model_copy(update={"certificate_key": key})

        logger.info("Join credentials extracted (API server %s)", credential.api_address)
        return credential
