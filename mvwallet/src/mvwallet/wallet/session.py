"""
Wallet session: everything the signer knows about one unlocked vault.

A session is built once from the vault's already-resolved facts (seed or
master extended key, decoy flag) and handed to every core call. Closing it
scrubs the seed buffer and drops derived keys; any later operation raises.
"""

from __future__ import annotations

from loguru import logger

from mvcore.constants import HARDENED
from mvcore.models import NetworkType, ScriptType
from mvwallet.config import WalletSettings
from mvwallet.psbt.proposal import Proposal
from mvwallet.psbt.signer import PsbtSigner, SigningResult
from mvwallet.wallet import bip85
from mvwallet.wallet.address import pubkey_to_address
from mvwallet.wallet.bip32 import DerivationError, HDKey, format_path, parse_path
from mvwallet.wallet.bip39 import mnemonic_to_seed, scrub
from mvwallet.wallet.descriptor import Account, DescriptorError, SingleSigAccount
from mvwallet.wallet.message import SignatureEnvelope, sign_message
from mvwallet.wallet.ownership import Classification, OwnershipMatcher


class WalletSession:
    """
    Signing session for one vault.

    Args:
        seed: BIP39 seed bytes (16-64); copied into a buffer the session owns
        master_xprv: Master extended private key, instead of a seed
        is_decoy: Whether the vault collaborator opened the decoy vault
        settings: Scan windows, signing order and network
        accounts: Known accounts for ownership matching
    """

    def __init__(
        self,
        seed: bytes | bytearray | None = None,
        *,
        master_xprv: str | None = None,
        is_decoy: bool = False,
        settings: WalletSettings | None = None,
        accounts: list[Account] | None = None,
    ):
        if (seed is None) == (master_xprv is None):
            raise ValueError("Provide exactly one of seed or master_xprv")

        self.settings = settings or WalletSettings()
        self.is_decoy = is_decoy
        self._seed: bytearray | None = None

        if seed is not None:
            self._seed = bytearray(seed)
            self._master: HDKey | None = HDKey.from_seed(self._seed)
        else:
            self._master = HDKey.from_extended_key(master_xprv)
            if not self._master.is_private or self._master.depth != 0:
                raise DerivationError("Session requires a master extended private key")

        self._accounts: list[Account] = list(accounts or [])
        self._matcher: OwnershipMatcher | None = None
        self.closed = False

        logger.info(
            f"Opened session for {self._master.fingerprint.hex()} on {self.network.value} "
            f"with {len(self._accounts)} account(s)"
        )

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "", **kwargs) -> WalletSession:
        seed = mnemonic_to_seed(mnemonic, passphrase)
        try:
            return cls(seed, **kwargs)
        finally:
            scrub(seed)

    def __enter__(self) -> WalletSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        if self._seed is not None:
            scrub(self._seed)
            self._seed = None
        self._master = None
        self._matcher = None
        self.closed = True
        logger.info("Session closed")

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError("Wallet session is closed")

    @property
    def network(self) -> NetworkType:
        return self.settings.network

    @property
    def master(self) -> HDKey:
        self._check_open()
        return self._master

    @property
    def fingerprint(self) -> bytes:
        return self.master.fingerprint

    # Accounts

    @property
    def accounts(self) -> list[Account]:
        self._check_open()
        return list(self._accounts)

    def _account_index(self, label: str) -> int:
        for i, account in enumerate(self._accounts):
            if account.label == label:
                return i
        raise DescriptorError(f"No account labelled {label!r}")

    def add_account(self, account: Account) -> None:
        self._check_open()
        if any(a.label == account.label for a in self._accounts):
            raise DescriptorError(f"Account {account.label!r} already exists")
        if account.network != self.network:
            raise DescriptorError(f"Account {account.label!r} is not for {self.network.value}")
        self._accounts.append(account)
        self._matcher = None

    def add_single_sig_account(
        self,
        script_type: ScriptType = ScriptType.P2WPKH,
        account_numbers: list[int] | None = None,
        label: str | None = None,
    ) -> SingleSigAccount:
        account = SingleSigAccount.from_master(
            self.master, script_type, self.network, account_numbers, label
        )
        self.add_account(account)
        return account

    def remove_account(self, label: str) -> None:
        self._check_open()
        del self._accounts[self._account_index(label)]
        self._matcher = None

    def add_account_number(self, label: str, account_number: int) -> SingleSigAccount:
        """Enumerate one more sibling account number under a single-sig account."""
        self._check_open()
        position = self._account_index(label)
        account = self._accounts[position]
        if not isinstance(account, SingleSigAccount):
            raise DescriptorError("Account numbers of a multisig account are fixed")
        if account.master_fingerprint != self.fingerprint.hex():
            raise DescriptorError(f"Account {label!r} belongs to a different master key")
        path = account.base_path(account_number)
        prefix = "xpub" if self.network.is_mainnet else "tpub"
        xpub = self.master.derive(path).neuter().serialize(prefix)
        updated = account.with_account(account_number, xpub)
        self._accounts[position] = updated
        self._matcher = None
        return updated

    def remove_account_number(self, label: str, account_number: int) -> SingleSigAccount:
        self._check_open()
        position = self._account_index(label)
        account = self._accounts[position]
        if not isinstance(account, SingleSigAccount):
            raise DescriptorError("Account numbers of a multisig account are fixed")
        updated = account.without_account(account_number)
        self._accounts[position] = updated
        self._matcher = None
        return updated

    # Ownership

    @property
    def matcher(self) -> OwnershipMatcher:
        self._check_open()
        if self._matcher is None:
            self._matcher = OwnershipMatcher(
                self._accounts,
                self.network,
                single_sig_window=self.settings.single_sig_scan_window,
                multisig_window=self.settings.multisig_scan_window,
            )
        return self._matcher

    def address_for_path(
        self, account: Account, account_number: int, branch: int, index: int
    ) -> str:
        return self.matcher.address_for_path(account, account_number, branch, index)

    def classify(self, address: str) -> Classification:
        return self.matcher.classify(address)

    # Proposals

    def signer(self) -> PsbtSigner:
        return PsbtSigner(
            self.master,
            self.network,
            matcher=self.matcher,
            order=self.settings.signing_order,
            alternate_account_range=self.settings.alternate_account_range,
        )

    def open_proposal(self, data: bytes | str) -> Proposal:
        self._check_open()
        proposal = Proposal(data)
        proposal.parse()
        return proposal

    def sign_proposal(self, proposal: Proposal) -> SigningResult:
        return proposal.sign(self.signer())

    # Messages and derived secrets

    def sign_message(
        self,
        message: str,
        path: str,
        envelope: SignatureEnvelope = SignatureEnvelope.ELECTRUM,
    ) -> tuple[str, str]:
        """
        Sign a message with the key at path.

        Returns:
            (address, signature) with the address type taken from the path's
            purpose
        """
        indexes = parse_path(path)
        if not indexes or indexes[0] < HARDENED:
            raise DerivationError(f"Message signing path needs a hardened purpose: {path}")
        try:
            script_type = ScriptType.from_purpose(indexes[0] - HARDENED)
        except ValueError as e:
            raise DerivationError(str(e)) from e

        key = self.master.derive(indexes)
        address = pubkey_to_address(key.get_public_key_bytes(), script_type, self.network)
        logger.info(f"Signing message with key at {format_path(indexes)}")
        return address, sign_message(message, key.private_key, envelope, script_type)

    def bip85_mnemonic(self, words: int = 12, index: int = 0) -> str:
        return bip85.derive_mnemonic(self.master, words, index)

    def bip85_password(self, length: int = 24, index: int = 0) -> str:
        return bip85.derive_password(self.master, length, index)
