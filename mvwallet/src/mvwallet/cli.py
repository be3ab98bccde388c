"""
Air-gapped signer CLI - addresses, PSBT signing, message signing, BIP85 and QR transport.
"""

from __future__ import annotations

import base64
import sys
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError

from mvcore.crypto import CryptoError
from mvcore.models import NetworkType, ScriptType
from mvwallet.config import WalletSettings
from mvwallet.psbt.finalizer import FinalizedTransaction
from mvwallet.psbt.models import (
    InsufficientSignaturesError,
    MalformedProposalError,
    ProposalStateError,
)
from mvwallet.psbt.proposal import Proposal
from mvwallet.qr import seedqr
from mvwallet.qr.errors import QRFormatError
from mvwallet.qr.formats import get_transport_format
from mvwallet.qr.scanner import FrameAccumulator
from mvwallet.wallet.bip32 import DerivationError, format_path
from mvwallet.wallet.bip39 import MnemonicError
from mvwallet.wallet.descriptor import DescriptorError, account_from_bsms, parse_descriptor
from mvwallet.wallet.message import SignatureEnvelope, verify_message
from mvwallet.wallet.session import WalletSession

app = typer.Typer(
    name="mv-wallet",
    help="Offline signer for an air-gapped Bitcoin wallet",
    add_completion=False,
)

USER_ERRORS = (
    CryptoError,
    DerivationError,
    DescriptorError,
    InsufficientSignaturesError,
    MalformedProposalError,
    MnemonicError,
    ProposalStateError,
    QRFormatError,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def _read_source(source: str) -> str:
    """Treat the argument as a file path when one exists, otherwise as literal text."""
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    if len(source) < 4096 and path.is_file():
        return path.read_text()
    return source


def _settings(network: str | None, log_level: str, **overrides) -> WalletSettings:
    updates = {k: v for k, v in overrides.items() if v is not None}
    updates["log_level"] = log_level
    if network:
        updates["network"] = network
    try:
        return WalletSettings(**updates)
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        raise typer.Exit(1)


def _open_session(
    mnemonic: str | None,
    mnemonic_file: Path | None,
    passphrase: str,
    settings: WalletSettings,
    descriptors: list[str] | None = None,
    bsms_files: list[Path] | None = None,
) -> WalletSession:
    phrase = _load_mnemonic(mnemonic, mnemonic_file)
    session = WalletSession.from_mnemonic(phrase, passphrase, settings=settings)
    for script_type in ScriptType:
        session.add_single_sig_account(script_type)
    for i, text in enumerate(descriptors or []):
        session.add_account(parse_descriptor(text, settings.network, label=f"descriptor-{i}"))
    for path in bsms_files or []:
        session.add_account(account_from_bsms(path.read_text(), settings.network, label=path.stem))
    return session


def _emit_frames(payload: bytes, qr_format: str, density: str, content: str) -> None:
    for frame in get_transport_format(qr_format).encode(payload, content, density):
        typer.echo(frame)


MnemonicOption = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic")
MnemonicFileOption = typer.Option(None, "--mnemonic-file", "-f", help="Path to mnemonic file")
PassphraseOption = typer.Option("", "--passphrase", envvar="MNEMONIC_PASSPHRASE")
NetworkOption = typer.Option(None, "--network", "-n", help="mainnet | testnet | signet | regtest")
LogLevelOption = typer.Option("WARNING", "--log-level", "-l")


@app.command()
def address(
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    network: str | None = NetworkOption,
    script_type: ScriptType = typer.Option(ScriptType.P2WPKH, "--type", "-t"),
    account: int = typer.Option(0, "--account", "-a"),
    change: bool = typer.Option(False, "--change", help="Use the change branch"),
    index: int = typer.Option(0, "--index", "-i"),
    count: int = typer.Option(1, "--count", "-c"),
    log_level: str = LogLevelOption,
) -> None:
    """Derive addresses of a single-sig account."""
    setup_logging(log_level)
    settings = _settings(network, log_level)
    try:
        with _open_session(mnemonic, mnemonic_file, passphrase, settings) as session:
            wallet_account = session.add_account_number(f"{script_type.value} wallet", account)
            branch = 1 if change else 0
            for i in range(index, index + count):
                addr = session.address_for_path(wallet_account, account, branch, i)
                path = wallet_account.full_path(account, branch, i)
                typer.echo(f"{format_path(path)}  {addr}")
    except USER_ERRORS as e:
        logger.error(f"Failed to derive address: {e}")
        raise typer.Exit(1)


@app.command("check-address")
def check_address(
    addr: str = typer.Argument(..., metavar="ADDRESS"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    network: str | None = NetworkOption,
    descriptor: list[str] = typer.Option(None, "--descriptor", "-d", help="Extra account"),
    bsms: list[Path] = typer.Option(None, "--bsms", help="BSMS record of a multisig account"),
    log_level: str = LogLevelOption,
) -> None:
    """Check whether an address belongs to the wallet."""
    setup_logging(log_level)
    settings = _settings(network, log_level)
    try:
        with _open_session(
            mnemonic, mnemonic_file, passphrase, settings, descriptor, bsms
        ) as session:
            result = session.classify(addr)
            if not result.belongs:
                typer.echo(f"{addr} does NOT belong to this wallet")
                raise typer.Exit(2)
            match = result.match
            kind = "change" if match.is_change else "receive"
            typer.echo(
                f"{addr} belongs to {match.account.label}, account {match.account_number}, "
                f"{kind} index {match.index}"
            )
    except USER_ERRORS as e:
        logger.error(f"Failed to check address: {e}")
        raise typer.Exit(1)


@app.command()
def inspect(
    psbt: str = typer.Argument(..., help="PSBT file, base64/hex text, or - for stdin"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    network: str | None = NetworkOption,
    descriptor: list[str] = typer.Option(None, "--descriptor", "-d"),
    bsms: list[Path] = typer.Option(None, "--bsms"),
    log_level: str = LogLevelOption,
) -> None:
    """Show inputs, outputs, fee and signature state of a PSBT."""
    setup_logging(log_level)
    settings = _settings(network, log_level)
    try:
        proposal = Proposal(_read_source(psbt))
        proposal.parse()
        if mnemonic or mnemonic_file:
            with _open_session(
                mnemonic, mnemonic_file, passphrase, settings, descriptor, bsms
            ) as session:
                summary = proposal.analyze(session.matcher, settings.network)
        else:
            summary = proposal.analyze(network=settings.network)
    except USER_ERRORS as e:
        logger.error(f"Failed to inspect PSBT: {e}")
        raise typer.Exit(1)

    typer.echo(f"\nInputs ({len(summary.inputs)}):")
    for item in summary.inputs:
        sigs = f"{item.signatures}/{item.required}"
        if item.is_multisig:
            sigs += f" of {item.total_keys}"
        state = "finalized" if item.finalized else f"signatures {sigs}"
        hint = f"  [{item.derivation_hint}]" if item.derivation_hint else ""
        typer.echo(f"  #{item.index} {item.prevout} {item.value:>15,} sats  {item.script_type}")
        typer.echo(f"      {state}{hint}")

    typer.echo(f"\nOutputs ({len(summary.outputs)}):")
    for item in summary.outputs:
        tag = item.classification.value
        where = f"  ({item.path})" if item.path else ""
        typer.echo(f"  #{item.index} {item.address or '<non-standard>'} {item.value:>15,} sats")
        typer.echo(f"      {tag}{where}")

    typer.echo(f"\nFee:      {summary.fee:,} sats (~{summary.fee_rate:.1f} sat/vB)")
    typer.echo(f"Size:     ~{summary.virtual_size} vB")
    typer.echo(f"Ready:    {'yes' if summary.ready_to_broadcast else 'no'}")
    for warning in summary.warnings:
        typer.echo(f"Warning:  {warning}")


@app.command()
def sign(
    psbt: str = typer.Argument(..., help="PSBT file, base64/hex text, or - for stdin"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    network: str | None = NetworkOption,
    descriptor: list[str] = typer.Option(None, "--descriptor", "-d"),
    bsms: list[Path] = typer.Option(None, "--bsms"),
    order: str | None = typer.Option(None, "--order", help="declared_first | scan_first"),
    finalize: bool = typer.Option(False, "--finalize", help="Finalize when fully signed"),
    qr_format: str | None = typer.Option(None, "--qr", help="ur-legacy | ur-modern | bbqr"),
    density: str | None = typer.Option(None, "--density"),
    log_level: str = LogLevelOption,
) -> None:
    """Sign every input of a PSBT this wallet can sign."""
    setup_logging(log_level)
    settings = _settings(network, log_level, signing_order=order, qr_density=density)
    try:
        with _open_session(
            mnemonic, mnemonic_file, passphrase, settings, descriptor, bsms
        ) as session:
            proposal = session.open_proposal(_read_source(psbt))
            result = session.sign_proposal(proposal)
            for index, path in result.alternate_paths.items():
                logger.warning(f"Input {index} signed with alternate path {path}")
            if finalize:
                finalized = proposal.finalize()
                _output_transaction(finalized, qr_format, settings.qr_density)
                return
            if qr_format:
                _emit_frames(proposal.export(), qr_format, settings.qr_density, "psbt")
            else:
                typer.echo(proposal.export_base64())
    except USER_ERRORS + (ValueError,) as e:
        logger.error(f"Failed to sign PSBT: {e}")
        raise typer.Exit(1)

    if not result.signed_inputs:
        logger.warning("No inputs were signed")


def _output_transaction(
    finalized: FinalizedTransaction, qr_format: str | None, density: str
) -> None:
    if qr_format:
        _emit_frames(finalized.raw, qr_format, density, "transaction")
    else:
        typer.echo(finalized.hex)
    logger.info(f"txid {finalized.txid}")


@app.command("finalize")
def finalize_command(
    psbt: str = typer.Argument(..., help="PSBT file, base64/hex text, or - for stdin"),
    qr_format: str | None = typer.Option(None, "--qr"),
    density: str = typer.Option("medium", "--density"),
    log_level: str = LogLevelOption,
) -> None:
    """Finalize a fully signed PSBT and print the raw transaction."""
    setup_logging(log_level)
    try:
        proposal = Proposal(_read_source(psbt))
        proposal.parse()
        _output_transaction(proposal.finalize(), qr_format, density)
    except USER_ERRORS + (ValueError,) as e:
        logger.error(f"Failed to finalize PSBT: {e}")
        raise typer.Exit(1)


@app.command("bip85-mnemonic")
def bip85_mnemonic(
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    words: int = typer.Option(12, "--words", "-w", help="12, 18 or 24"),
    index: int = typer.Option(0, "--index", "-i"),
    log_level: str = LogLevelOption,
) -> None:
    """Derive a child mnemonic (BIP85)."""
    setup_logging(log_level)
    try:
        with _open_session(mnemonic, mnemonic_file, passphrase, _settings(None, log_level)) as s:
            typer.echo(s.bip85_mnemonic(words, index))
    except USER_ERRORS as e:
        logger.error(f"Failed to derive mnemonic: {e}")
        raise typer.Exit(1)


@app.command("bip85-password")
def bip85_password(
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    length: int = typer.Option(24, "--length", help="20-86 characters"),
    index: int = typer.Option(0, "--index", "-i"),
    log_level: str = LogLevelOption,
) -> None:
    """Derive a base64 password (BIP85)."""
    setup_logging(log_level)
    try:
        with _open_session(mnemonic, mnemonic_file, passphrase, _settings(None, log_level)) as s:
            typer.echo(s.bip85_password(length, index))
    except USER_ERRORS as e:
        logger.error(f"Failed to derive password: {e}")
        raise typer.Exit(1)


@app.command("sign-message")
def sign_message_command(
    message: str = typer.Argument(...),
    path: str = typer.Option("m/84'/0'/0'/0/0", "--path", "-p"),
    envelope: SignatureEnvelope = typer.Option(SignatureEnvelope.ELECTRUM, "--envelope"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    passphrase: str = PassphraseOption,
    network: str | None = NetworkOption,
    log_level: str = LogLevelOption,
) -> None:
    """Sign a message with the key at a derivation path."""
    setup_logging(log_level)
    settings = _settings(network, log_level)
    try:
        with _open_session(mnemonic, mnemonic_file, passphrase, settings) as session:
            addr, signature = session.sign_message(message, path, envelope)
    except USER_ERRORS as e:
        logger.error(f"Failed to sign message: {e}")
        raise typer.Exit(1)
    typer.echo(f"Address:   {addr}")
    typer.echo(f"Signature: {signature}")


@app.command("verify-message")
def verify_message_command(
    message: str = typer.Argument(...),
    signature: str = typer.Argument(...),
    addr: str = typer.Argument(..., metavar="ADDRESS"),
    network: NetworkType = typer.Option(NetworkType.MAINNET, "--network", "-n"),
    log_level: str = LogLevelOption,
) -> None:
    """Verify a signed message against an address."""
    setup_logging(log_level)
    if verify_message(message, signature, addr, network):
        typer.echo("Signature is VALID")
    else:
        typer.echo("Signature is INVALID")
        raise typer.Exit(1)


@app.command("qr-encode")
def qr_encode(
    source: str = typer.Argument(..., help="PSBT (base64/hex) or raw transaction hex"),
    qr_format: str = typer.Option("ur-legacy", "--format", help="ur-legacy | ur-modern | bbqr"),
    density: str = typer.Option("medium", "--density", help="low | medium | high"),
    transaction: bool = typer.Option(False, "--transaction", help="Source is a raw transaction"),
    log_level: str = LogLevelOption,
) -> None:
    """Print the QR frames for a PSBT or transaction, one per line."""
    setup_logging(log_level)
    text = _read_source(source).strip()
    try:
        if transaction:
            payload = bytes.fromhex(text)
        else:
            proposal = Proposal(text)
            proposal.parse()
            payload = proposal.export()
        _emit_frames(payload, qr_format, density, "transaction" if transaction else "psbt")
    except USER_ERRORS + (ValueError,) as e:
        logger.error(f"Failed to encode QR frames: {e}")
        raise typer.Exit(1)


@app.command("qr-decode")
def qr_decode(
    source: str = typer.Argument("-", help="File with one scanned frame per line, or -"),
    log_level: str = LogLevelOption,
) -> None:
    """Reassemble scanned QR frames and print the payload."""
    setup_logging(log_level)
    accumulator = FrameAccumulator()
    try:
        for line in _read_source(source).splitlines():
            if not line.strip():
                continue
            progress = accumulator.process_frame(line)
            if progress is not None:
                logger.info(f"Scan progress {progress}%")
            if accumulator.is_complete():
                break
    except QRFormatError as e:
        logger.error(f"Invalid QR frame: {e}")
        raise typer.Exit(1)

    result = accumulator.get_result()
    if result is None:
        logger.error(f"Incomplete scan: {accumulator.received_count} frame(s) received")
        raise typer.Exit(1)
    if result.content_type == "psbt":
        typer.echo(base64.b64encode(result.data).decode("ascii"))
    else:
        typer.echo(result.data.hex())


@app.command("seedqr")
def seedqr_command(
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    compact: bool = typer.Option(False, "--compact", help="Compact SeedQR (hex of entropy)"),
    decode: str | None = typer.Option(None, "--decode", help="SeedQR digits or compact hex"),
    log_level: str = LogLevelOption,
) -> None:
    """Export a mnemonic as SeedQR, or decode one."""
    setup_logging(log_level)
    try:
        if decode:
            content = bytes.fromhex(decode) if compact else decode
            typer.echo(seedqr.decode_seedqr(content))
            return
        phrase = _load_mnemonic(mnemonic, mnemonic_file)
        if compact:
            typer.echo(seedqr.encode_compact(phrase).hex())
        else:
            typer.echo(seedqr.encode_standard(phrase))
    except (ValueError, QRFormatError) as e:
        logger.error(f"SeedQR failed: {e}")
        raise typer.Exit(1)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
