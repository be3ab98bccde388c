"""
Wallet account descriptors.

An account is immutable apart from the set of enumerated sibling account
numbers. Single-sig accounts carry one account-level xpub per account number;
multisig accounts carry the cosigner set and threshold. Both produce output
descriptors (BIP380) and derive scripts/addresses for (account, branch, index).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cached_property

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from mvcore.constants import CHANGE_BRANCH, HARDENED, PURPOSE_MULTISIG, RECEIVE_BRANCH
from mvcore.crypto import CryptoError
from mvcore.descriptor_checksum import add_checksum, strip_checksum
from mvcore.models import MultisigScriptType, NetworkType, ScriptType
from mvwallet.wallet.address import script_to_address
from mvwallet.wallet.bip32 import DerivationError, HDKey, format_path, parse_path
from mvwallet.wallet.script import multisig_script, p2sh_wrap, p2wsh_script, script_for_pubkey

BSMS_VERSION = "BSMS 1.0"
NO_PATH_RESTRICTIONS = "No path restrictions"
STANDARD_BRANCHES = (RECEIVE_BRANCH, CHANGE_BRANCH)

_KEY_EXPRESSION = re.compile(
    r"^\[(?P<fp>[0-9a-fA-F]{8})(?P<path>(?:/\d+['hH]?)*)\]"
    r"(?P<key>[1-9A-HJ-NP-Za-km-z]+)(?P<suffix>(?:/.*)?)$"
)


class DescriptorError(ValueError):
    pass


def _descriptor_path(path: str | list[int]) -> str:
    """Origin path without the leading 'm', as used inside descriptors."""
    indexes = parse_path(path) if isinstance(path, str) else path
    return format_path(indexes)[1:]


def _parse_branches(suffix: str) -> tuple[int, ...]:
    """Branches allowed by a key suffix such as /<0;1>/*, /0/* or /**."""
    if suffix in ("", "/**"):
        return STANDARD_BRANCHES
    multipath = re.fullmatch(r"/<(\d+(?:;\d+)+)>/\*", suffix)
    if multipath:
        return tuple(int(b) for b in multipath.group(1).split(";"))
    single = re.fullmatch(r"/(\d+)/\*", suffix)
    if single:
        return (int(single.group(1)),)
    raise DescriptorError(f"Unsupported key suffix: {suffix!r}")


def _split_args(text: str) -> list[str]:
    """Split on top-level commas."""
    args = []
    depth = 0
    current = ""
    for c in text:
        if c in "([<":
            depth += 1
        elif c in ")]>":
            depth -= 1
        if c == "," and depth == 0:
            args.append(current)
            current = ""
        else:
            current += c
    args.append(current)
    return [a.strip() for a in args]


def _unwrap(text: str, name: str) -> str | None:
    prefix = f"{name}("
    if text.startswith(prefix) and text.endswith(")"):
        return text[len(prefix) : -1]
    return None


@dataclass
class KeyExpression:
    fingerprint: str
    path: str
    xpub: str
    branches: tuple[int, ...]


def parse_key_expression(text: str) -> KeyExpression:
    match = _KEY_EXPRESSION.match(text.strip())
    if match is None:
        raise DescriptorError(f"Key expression needs [fingerprint/path]xpub origin: {text!r}")
    return KeyExpression(
        fingerprint=match.group("fp").lower(),
        path="m" + match.group("path"),
        xpub=match.group("key"),
        branches=_parse_branches(match.group("suffix")),
    )


def _check_network(node_text: str, network: NetworkType) -> None:
    is_test_key = node_text[:4] in ("tpub", "upub", "vpub", "Upub", "Vpub")
    if is_test_key == network.is_mainnet:
        raise DescriptorError(f"Extended key {node_text[:4]} does not match {network.value}")


def _parse_public_node(text: str) -> HDKey:
    try:
        node = HDKey.from_extended_key(text)
    except DerivationError as e:
        raise DescriptorError(f"Invalid extended public key: {e}") from e
    if node.is_private:
        raise DescriptorError("Account descriptors must not contain private keys")
    return node


def _check_fingerprint(value: str) -> str:
    if not re.fullmatch(r"[0-9a-fA-F]{8}", value):
        raise ValueError("Fingerprint must be 8 hex characters")
    return value.lower()


class SingleSigAccount(BaseModel):
    """
    Single-key account of one script type over one or more account numbers.

    account_xpubs maps account number -> account-level extended public key
    (the node at m/purpose'/coin'/account').
    """

    label: str = Field(default="Single-sig", min_length=1)
    script_type: ScriptType
    network: NetworkType = NetworkType.MAINNET
    master_fingerprint: str
    account_xpubs: dict[int, str] = Field(..., min_length=1)
    branches: tuple[int, ...] = STANDARD_BRANCHES

    model_config = {"frozen": True}

    @field_validator("master_fingerprint")
    @classmethod
    def validate_fingerprint(cls, v: str) -> str:
        return _check_fingerprint(v)

    @field_validator("account_xpubs")
    @classmethod
    def validate_xpubs(cls, v: dict[int, str]) -> dict[int, str]:
        for number, xpub in v.items():
            if not 0 <= number < HARDENED:
                raise ValueError(f"Account number out of range: {number}")
            try:
                node = HDKey.from_extended_key(xpub)
            except DerivationError as e:
                raise ValueError(f"Invalid xpub for account {number}: {e}") from e
            if node.is_private:
                raise ValueError("Account xpubs must be public keys")
        return v

    @model_validator(mode="after")
    def validate_network(self) -> SingleSigAccount:
        for xpub in self.account_xpubs.values():
            _check_network(xpub, self.network)
        return self

    @cached_property
    def account_nodes(self) -> dict[int, HDKey]:
        return {n: HDKey.from_extended_key(x) for n, x in self.account_xpubs.items()}

    @property
    def account_numbers(self) -> list[int]:
        return sorted(self.account_xpubs)

    @property
    def is_multisig(self) -> bool:
        return False

    def base_path(self, account_number: int) -> list[int]:
        return [
            self.script_type.purpose + HARDENED,
            self.network.coin_type + HARDENED,
            account_number + HARDENED,
        ]

    def full_path(self, account_number: int, branch: int, index: int) -> list[int]:
        return self.base_path(account_number) + [branch, index]

    def account_node(self, account_number: int) -> HDKey:
        if account_number not in self.account_nodes:
            raise DescriptorError(f"Account {account_number} is not enumerated")
        return self.account_nodes[account_number]

    def pubkey_for_path(self, account_number: int, branch: int, index: int) -> bytes:
        node = self.account_node(account_number).derive_child(branch).derive_child(index)
        return node.get_public_key_bytes()

    def script_for_path(self, account_number: int, branch: int, index: int) -> bytes:
        pubkey = self.pubkey_for_path(account_number, branch, index)
        return script_for_pubkey(pubkey, self.script_type.value)

    def iter_scripts(self, account_number: int, branch: int, count: int):
        """Yield (index, scriptPubKey) for indexes 0..count-1 of one branch."""
        branch_node = self.account_node(account_number).derive_child(branch)
        for index in range(count):
            pubkey = branch_node.derive_child(index).get_public_key_bytes()
            yield index, script_for_pubkey(pubkey, self.script_type.value)

    def address_for_path(self, account_number: int, branch: int, index: int) -> str:
        address = script_to_address(
            self.script_for_path(account_number, branch, index), self.network
        )
        if address is None:
            path = f"{account_number}/{branch}/{index}"
            raise DescriptorError(f"No address for {self.label} at {path}")
        return address

    def descriptor(self, account_number: int) -> str:
        node = self.account_node(account_number)
        prefix = "xpub" if self.network.is_mainnet else "tpub"
        key = (
            f"[{self.master_fingerprint}{_descriptor_path(self.base_path(account_number))}]"
            f"{node.serialize(prefix)}/<0;1>/*"
        )
        body = {
            ScriptType.P2PKH: f"pkh({key})",
            ScriptType.P2SH_P2WPKH: f"sh(wpkh({key}))",
            ScriptType.P2WPKH: f"wpkh({key})",
            ScriptType.P2TR: f"tr({key})",
        }[self.script_type]
        return add_checksum(body)

    def with_account(self, account_number: int, xpub: str) -> SingleSigAccount:
        """Copy of this account that also enumerates account_number."""
        xpubs = dict(self.account_xpubs)
        xpubs[account_number] = xpub
        logger.info(f"Enumerating account {account_number} for {self.label}")
        return self.model_validate({**self.model_dump(), "account_xpubs": xpubs})

    def without_account(self, account_number: int) -> SingleSigAccount:
        if account_number not in self.account_xpubs:
            raise DescriptorError(f"Account {account_number} is not enumerated")
        if len(self.account_xpubs) == 1:
            raise DescriptorError("Cannot remove the only account")
        xpubs = {n: x for n, x in self.account_xpubs.items() if n != account_number}
        logger.info(f"Removed account {account_number} from {self.label}")
        return self.model_validate({**self.model_dump(), "account_xpubs": xpubs})

    @classmethod
    def from_master(
        cls,
        master: HDKey,
        script_type: ScriptType,
        network: NetworkType = NetworkType.MAINNET,
        account_numbers: list[int] | None = None,
        label: str | None = None,
    ) -> SingleSigAccount:
        numbers = account_numbers if account_numbers is not None else [0]
        prefix = "xpub" if network.is_mainnet else "tpub"
        xpubs = {}
        for number in numbers:
            path = [script_type.purpose + HARDENED, network.coin_type + HARDENED, number + HARDENED]
            xpubs[number] = master.derive(path).neuter().serialize(prefix)
        return cls(
            label=label or f"{script_type.value} wallet",
            script_type=script_type,
            network=network,
            master_fingerprint=master.fingerprint.hex(),
            account_xpubs=xpubs,
        )


class Cosigner(BaseModel):
    fingerprint: str
    derivation_path: str
    xpub: str

    model_config = {"frozen": True}

    @field_validator("fingerprint")
    @classmethod
    def validate_fingerprint(cls, v: str) -> str:
        return _check_fingerprint(v)

    @field_validator("derivation_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        try:
            return format_path(parse_path(v))
        except DerivationError as e:
            raise ValueError(str(e)) from e

    @field_validator("xpub")
    @classmethod
    def validate_xpub(cls, v: str) -> str:
        try:
            node = HDKey.from_extended_key(v)
        except DerivationError as e:
            raise ValueError(str(e)) from e
        if node.is_private:
            raise ValueError("Cosigner keys must be public")
        return v

    @cached_property
    def node(self) -> HDKey:
        return HDKey.from_extended_key(self.xpub)

    @property
    def path_indexes(self) -> list[int]:
        return parse_path(self.derivation_path)

    def key_expression(self, network: NetworkType) -> str:
        prefix = "xpub" if network.is_mainnet else "tpub"
        return (
            f"[{self.fingerprint}{_descriptor_path(self.derivation_path)}]"
            f"{self.node.serialize(prefix)}/<0;1>/*"
        )

    def pubkey_for_path(self, branch: int, index: int) -> bytes:
        return self.node.derive_child(branch).derive_child(index).get_public_key_bytes()


class MultisigAccount(BaseModel):
    """m-of-n account over a cosigner set (sortedmulti unless sorted_keys is False)."""

    label: str = Field(default="Multisig", min_length=1)
    threshold: int = Field(..., ge=1, le=15)
    script_type: MultisigScriptType = MultisigScriptType.P2WSH
    network: NetworkType = NetworkType.MAINNET
    cosigners: list[Cosigner] = Field(..., min_length=1, max_length=15)
    branches: tuple[int, ...] = STANDARD_BRANCHES
    sorted_keys: bool = True

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_account(self) -> MultisigAccount:
        if self.threshold > len(self.cosigners):
            raise ValueError(
                f"Threshold {self.threshold} exceeds {len(self.cosigners)} cosigners"
            )
        fingerprints_and_keys = {(c.fingerprint, c.xpub) for c in self.cosigners}
        if len(fingerprints_and_keys) != len(self.cosigners):
            raise ValueError("Duplicate cosigner")
        for cosigner in self.cosigners:
            _check_network(cosigner.xpub, self.network)
        if not self.branches:
            raise ValueError("At least one branch must be enumerable")
        return self

    @property
    def is_multisig(self) -> bool:
        return True

    @property
    def account_number(self) -> int:
        """Account element of the first cosigner's BIP48/BIP44-style path."""
        path = self.cosigners[0].path_indexes
        if len(path) >= 3 and path[0] == PURPOSE_MULTISIG + HARDENED:
            return path[2] - HARDENED
        if len(path) >= 3:
            return path[2] & ~HARDENED
        return 0

    @property
    def account_numbers(self) -> list[int]:
        return [self.account_number]

    def _check_account(self, account_number: int) -> None:
        if account_number != self.account_number:
            raise DescriptorError(f"Multisig account has no account number {account_number}")

    def pubkeys_for_path(self, branch: int, index: int) -> list[bytes]:
        """Cosigner child keys in cosigner order."""
        return [c.pubkey_for_path(branch, index) for c in self.cosigners]

    def multisig_script_for_path(self, branch: int, index: int) -> bytes:
        return multisig_script(
            self.threshold, self.pubkeys_for_path(branch, index), sort=self.sorted_keys
        )

    def script_for_path(self, account_number: int, branch: int, index: int) -> bytes:
        self._check_account(account_number)
        return self._wrap(self.multisig_script_for_path(branch, index))

    def iter_scripts(self, account_number: int, branch: int, count: int):
        self._check_account(account_number)
        branch_nodes = [c.node.derive_child(branch) for c in self.cosigners]
        for index in range(count):
            pubkeys = [n.derive_child(index).get_public_key_bytes() for n in branch_nodes]
            inner = multisig_script(self.threshold, pubkeys, sort=self.sorted_keys)
            yield index, self._wrap(inner)

    def _wrap(self, inner: bytes) -> bytes:
        if self.script_type == MultisigScriptType.P2WSH:
            return p2wsh_script(inner)
        if self.script_type == MultisigScriptType.P2SH_P2WSH:
            return p2sh_wrap(p2wsh_script(inner))
        return p2sh_wrap(inner)

    def address_for_path(self, account_number: int, branch: int, index: int) -> str:
        address = script_to_address(
            self.script_for_path(account_number, branch, index), self.network
        )
        if address is None:
            path = f"{account_number}/{branch}/{index}"
            raise DescriptorError(f"No address for {self.label} at {path}")
        return address

    def full_path(self, cosigner: Cosigner, branch: int, index: int) -> list[int]:
        return cosigner.path_indexes + [branch, index]

    def first_address(self) -> str:
        return self.address_for_path(self.account_number, self.branches[0], 0)

    def descriptor(self) -> str:
        keys = ",".join(c.key_expression(self.network) for c in self.cosigners)
        multi = "sortedmulti" if self.sorted_keys else "multi"
        inner = f"{multi}({self.threshold},{keys})"
        body = {
            MultisigScriptType.P2WSH: f"wsh({inner})",
            MultisigScriptType.P2SH_P2WSH: f"sh(wsh({inner}))",
            MultisigScriptType.P2SH: f"sh({inner})",
        }[self.script_type]
        return add_checksum(body)

    def cosigner_by_fingerprint(self, fingerprint: bytes) -> list[Cosigner]:
        return [c for c in self.cosigners if c.fingerprint == fingerprint.hex()]


Account = SingleSigAccount | MultisigAccount


def parse_descriptor(
    text: str, network: NetworkType = NetworkType.MAINNET, label: str | None = None
) -> Account:
    """
    Parse an output descriptor into an account.

    Supports pkh, sh(wpkh), wpkh and tr single-key descriptors and wsh, sh(wsh)
    and sh multisig descriptors with [fingerprint/path]xpub key origins.
    """
    try:
        body = strip_checksum(text.strip())
    except CryptoError as e:
        raise DescriptorError(str(e)) from e
    body = body.replace(" ", "")

    for script_type, wrapper in (
        (MultisigScriptType.P2SH_P2WSH, lambda b: _unwrap(_unwrap(b, "sh") or "", "wsh")),
        (MultisigScriptType.P2WSH, lambda b: _unwrap(b, "wsh")),
        (MultisigScriptType.P2SH, lambda b: _unwrap(b, "sh")),
    ):
        inner = wrapper(body)
        if inner is None:
            continue
        for multi in ("sortedmulti", "multi"):
            args_text = _unwrap(inner, multi)
            if args_text is not None:
                return _multisig_from_args(
                    args_text, script_type, network, multi == "sortedmulti", label
                )

    single = (
        (ScriptType.P2SH_P2WPKH, _unwrap(_unwrap(body, "sh") or "", "wpkh")),
        (ScriptType.P2WPKH, _unwrap(body, "wpkh")),
        (ScriptType.P2PKH, _unwrap(body, "pkh")),
        (ScriptType.P2TR, _unwrap(body, "tr")),
    )
    for script_type, key_text in single:
        if key_text is None:
            continue
        key = parse_key_expression(key_text)
        _check_network(key.xpub, network)
        node = _parse_public_node(key.xpub)
        indexes = parse_path(key.path)
        if len(indexes) != 3:
            raise DescriptorError("Single-sig key origin must be m/purpose'/coin'/account'")
        if indexes[0] != script_type.purpose + HARDENED:
            raise DescriptorError(
                f"Origin purpose {indexes[0] & ~HARDENED} contradicts {script_type.value}"
            )
        prefix = "xpub" if network.is_mainnet else "tpub"
        return SingleSigAccount(
            label=label or f"{script_type.value} wallet",
            script_type=script_type,
            network=network,
            master_fingerprint=key.fingerprint,
            account_xpubs={indexes[2] - HARDENED: node.serialize(prefix)},
            branches=key.branches,
        )

    raise DescriptorError(f"Unsupported descriptor: {body[:40]}...")


def _multisig_from_args(
    args_text: str,
    script_type: MultisigScriptType,
    network: NetworkType,
    sorted_keys: bool,
    label: str | None,
) -> MultisigAccount:
    args = _split_args(args_text)
    if len(args) < 2 or not args[0].isdigit():
        raise DescriptorError("Multisig descriptor needs a threshold and keys")

    threshold = int(args[0])
    keys = [parse_key_expression(a) for a in args[1:]]
    branch_sets = {k.branches for k in keys}
    if len(branch_sets) != 1:
        raise DescriptorError("Cosigner key suffixes disagree")

    cosigners = []
    for key in keys:
        _check_network(key.xpub, network)
        _parse_public_node(key.xpub)
        cosigners.append(
            Cosigner(fingerprint=key.fingerprint, derivation_path=key.path, xpub=key.xpub)
        )

    try:
        return MultisigAccount(
            label=label or f"{threshold}-of-{len(cosigners)} multisig",
            threshold=threshold,
            script_type=script_type,
            network=network,
            cosigners=cosigners,
            branches=branch_sets.pop(),
            sorted_keys=sorted_keys,
        )
    except ValueError as e:
        raise DescriptorError(str(e)) from e


@dataclass
class BsmsRecord:
    """BIP129 descriptor record."""

    version: str
    descriptor: str
    path_restrictions: str
    first_address: str

    def format(self) -> str:
        return "\n".join(
            [self.version, self.descriptor, self.path_restrictions, self.first_address]
        )


def parse_path_restrictions(text: str) -> tuple[int, ...]:
    if text.strip().lower() == NO_PATH_RESTRICTIONS.lower():
        return STANDARD_BRANCHES
    branches = []
    for part in text.split(","):
        match = re.fullmatch(r"/(\d+)/\*", part.strip())
        if match is None:
            raise DescriptorError(f"Unsupported path restriction: {part!r}")
        branches.append(int(match.group(1)))
    return tuple(branches)


def parse_bsms(text: str) -> BsmsRecord:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines or not lines[0].upper().startswith("BSMS"):
        raise DescriptorError("Not a BSMS descriptor record")
    if lines[0] != BSMS_VERSION:
        raise DescriptorError(f"Unsupported BSMS version: {lines[0]}")

    descriptor = None
    restrictions = NO_PATH_RESTRICTIONS
    first_address = ""
    for line in lines[1:]:
        if line.startswith("#"):
            continue
        if re.match(r"^(wsh|sh|wpkh|pkh|tr)\(", line):
            descriptor = line
        elif line.startswith("/") or line.lower() == NO_PATH_RESTRICTIONS.lower():
            restrictions = line
        else:
            first_address = line

    if descriptor is None:
        raise DescriptorError("BSMS record has no descriptor")
    return BsmsRecord(BSMS_VERSION, descriptor, restrictions, first_address)


def account_from_bsms(
    text: str, network: NetworkType = NetworkType.MAINNET, label: str | None = None
) -> MultisigAccount:
    """
    Import a BSMS record as a multisig account.

    The path restrictions limit the enumerated branches, and the record's first
    address must equal the derived first receive address.
    """
    record = parse_bsms(text)
    account = parse_descriptor(record.descriptor, network, label)
    if not isinstance(account, MultisigAccount):
        raise DescriptorError("BSMS record must describe a multisig wallet")

    branches = parse_path_restrictions(record.path_restrictions)
    account = account.model_validate({**account.model_dump(), "branches": branches})

    if record.first_address:
        derived = account.first_address()
        if derived != record.first_address:
            raise DescriptorError(
                f"BSMS first address {record.first_address} does not match derived {derived}"
            )
    logger.info(
        f"Imported BSMS {account.threshold}-of-{len(account.cosigners)} "
        f"with branches {list(account.branches)}"
    )
    return account


def format_bsms(account: MultisigAccount) -> str:
    restrictions = ",".join(f"/{b}/*" for b in account.branches)
    return BsmsRecord(
        BSMS_VERSION, account.descriptor(), restrictions, account.first_address()
    ).format()
