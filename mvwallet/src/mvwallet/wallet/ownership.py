"""
Address ownership matcher.

Derives scripts for (account, branch, index) and answers the reverse question:
does a script or address belong to one of the known accounts, and where.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from mvcore.constants import CHANGE_BRANCH, HARDENED, MULTISIG_SCAN_WINDOW, SINGLE_SIG_SCAN_WINDOW
from mvcore.crypto import CryptoError
from mvcore.models import (
    MultisigScriptType,
    NetworkType,
    OutputClassification,
    OutputKind,
    ScriptType,
)
from mvwallet.wallet.address import address_to_script
from mvwallet.wallet.descriptor import Account, MultisigAccount
from mvwallet.wallet.script import classify_script


class OwnershipMismatchError(Exception):
    pass


_EXPECTED_KINDS = {
    ScriptType.P2PKH: OutputKind.P2PKH,
    ScriptType.P2SH_P2WPKH: OutputKind.P2SH,
    ScriptType.P2WPKH: OutputKind.P2WPKH,
    ScriptType.P2TR: OutputKind.P2TR,
    MultisigScriptType.P2SH: OutputKind.P2SH,
    MultisigScriptType.P2SH_P2WSH: OutputKind.P2SH,
    MultisigScriptType.P2WSH: OutputKind.P2WSH,
}


@dataclass
class OwnershipMatch:
    account: Account
    account_number: int
    branch: int
    index: int

    @property
    def is_change(self) -> bool:
        return self.branch == CHANGE_BRANCH

    @property
    def classification(self) -> OutputClassification:
        return OutputClassification.CHANGE if self.is_change else OutputClassification.RECEIVE


@dataclass
class Classification:
    belongs: bool
    match: OwnershipMatch | None = None

    @property
    def account(self) -> Account | None:
        return self.match.account if self.match else None

    @property
    def branch(self) -> int | None:
        return self.match.branch if self.match else None

    @property
    def index(self) -> int | None:
        return self.match.index if self.match else None


class OwnershipMatcher:
    """
    Bounded reverse lookup over every known account.

    Each (account, account number, branch) is scanned for indexes
    0..window-1, with single-sig and multisig accounts using separate windows.
    Branch enumeration honors any path restriction on the account. Scanned
    scripts are cached so repeated lookups are cheap; the first match in
    account order wins.
    """

    def __init__(
        self,
        accounts: list[Account],
        network: NetworkType = NetworkType.MAINNET,
        single_sig_window: int = SINGLE_SIG_SCAN_WINDOW,
        multisig_window: int = MULTISIG_SCAN_WINDOW,
    ):
        self.accounts = list(accounts)
        self.network = network
        self.single_sig_window = single_sig_window
        self.multisig_window = multisig_window

        self.script_cache: dict[bytes, OwnershipMatch] = {}
        self._scanned: set[tuple[int, int, int]] = set()

    def window_for(self, account: Account) -> int:
        return self.multisig_window if account.is_multisig else self.single_sig_window

    def address_for_path(
        self, account: Account, account_number: int, branch: int, index: int
    ) -> str:
        return account.address_for_path(account_number, branch, index)

    def _scan_keys(self, kind: OutputKind):
        for position, account in enumerate(self.accounts):
            if _EXPECTED_KINDS[account.script_type] != kind:
                continue
            for number in account.account_numbers:
                for branch in account.branches:
                    yield position, account, number, branch

    def match_script(self, script: bytes) -> OwnershipMatch | None:
        if script in self.script_cache:
            return self.script_cache[script]

        kind = classify_script(script)
        if kind == OutputKind.UNKNOWN:
            return None

        for position, account, number, branch in self._scan_keys(kind):
            key = (position, number, branch)
            if key in self._scanned:
                continue

            window = self.window_for(account)
            logger.debug(
                f"Scanning {account.label} account {number} branch {branch} (0..{window - 1})"
            )
            for index, candidate in account.iter_scripts(number, branch, window):
                self.script_cache.setdefault(
                    candidate, OwnershipMatch(account, number, branch, index)
                )
            self._scanned.add(key)

            if script in self.script_cache:
                return self.script_cache[script]

        return None

    def match_hint(
        self, script: bytes, fingerprint: bytes, path: list[int]
    ) -> OwnershipMatch | None:
        """
        Check a declared key origin directly, without scanning.

        The declared path must agree with the account's purpose and enumerated
        account numbers and branches; the script is recomputed, never trusted.
        """
        if len(path) < 2:
            return None
        branch, index = path[-2], path[-1]
        if branch >= HARDENED or index >= HARDENED:
            return None

        for account in self.accounts:
            if branch not in account.branches:
                continue
            if isinstance(account, MultisigAccount):
                origins = [
                    c
                    for c in account.cosigner_by_fingerprint(fingerprint)
                    if c.path_indexes == path[:-2]
                ]
                if not origins:
                    continue
                number = account.account_number
            else:
                if account.master_fingerprint != fingerprint.hex() or len(path) != 5:
                    continue
                number = path[2] - HARDENED
                if number not in account.account_numbers:
                    continue
                if path[:3] != account.base_path(number):
                    continue

            if account.script_for_path(number, branch, index) == script:
                match = OwnershipMatch(account, number, branch, index)
                self.script_cache.setdefault(script, match)
                return match
        return None

    def classify(self, address: str) -> Classification:
        """Whether an address belongs to a known account, and where."""
        try:
            script = address_to_script(address, self.network)
        except (CryptoError, ValueError):
            return Classification(belongs=False)

        match = self.match_script(script)
        if match is None:
            return Classification(belongs=False)
        return Classification(belongs=True, match=match)

    def locate(self, address: str) -> OwnershipMatch:
        """Like classify, but raises OwnershipMismatchError when not found."""
        result = self.classify(address)
        if result.match is None:
            raise OwnershipMismatchError(f"Address {address} does not belong to this wallet")
        return result.match

    def classify_output(
        self, script: bytes, hints: list[tuple[bytes, list[int]]] | None = None
    ) -> tuple[OutputClassification, OwnershipMatch | None]:
        """
        Tag an output as external, receive or change.

        Change requires ownership and residence on the change branch; a
        self-send to a receive address is RECEIVE.
        """
        match = None
        for fingerprint, path in hints or []:
            match = self.match_hint(script, fingerprint, path)
            if match is not None:
                break
        if match is None:
            match = self.match_script(script)
        if match is None:
            return OutputClassification.EXTERNAL, None
        return match.classification, match
