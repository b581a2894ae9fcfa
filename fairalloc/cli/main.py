"""
fairalloc CLI - Command Line Interface for the allocation engine

Main entry point for all CLI commands.
"""

import json
import click
from pathlib import Path
from typing import Optional

from fairalloc.utils.logger import setup_logging, get_logger

logger = get_logger("cli")

PBKDF2_ITERATIONS = 100000


def _fernet_for(name: str, password: str):
    import base64
    import hashlib
    from cryptography.fernet import Fernet

    # Key name is the salt (deterministic per key file)
    key = base64.urlsafe_b64encode(
        hashlib.pbkdf2_hmac('sha256', password.encode(), name.encode(), PBKDF2_ITERATIONS)
    )
    return Fernet(key)


def decrypt_key_file(key_data: dict, name: str, password: str) -> Optional[bytes]:
    """
    Decrypt an organizer key file.

    Args:
        key_data: Loaded key file JSON
        name: Key name (used as salt)
        password: User's password

    Returns:
        Decrypted private key bytes, or None on a wrong password
    """
    from cryptography.fernet import InvalidToken

    if "encrypted_private_key" not in key_data:
        return None

    try:
        return _fernet_for(name, password).decrypt(key_data["encrypted_private_key"].encode())
    except InvalidToken:
        return None


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", is_flag=True, help="Also write logs to <log_dir>/fairalloc.log")
@click.option("--data-dir", default=None, help="Data directory (default from config)")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON config file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, log_file, data_dir, config_path):
    """fairalloc - Verifiable fair-allocation engine"""
    import logging
    from fairalloc.core.config import load_config

    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    if data_dir is not None:
        config.data_dir = Path(data_dir).expanduser()
    if log_file:
        config.log_to_file = True
    config.ensure_dirs()

    level = logging.DEBUG if debug else getattr(logging, config.log_level.upper(), logging.INFO)
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=config.log_to_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["data_dir"] = config.data_dir


# =============================================================================
# Key Commands
# =============================================================================

@cli.group()
def keys():
    """Organizer key management commands"""
    pass


@keys.command("create")
@click.option("--name", default="organizer", help="Key name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True, help="Encryption password")
@click.pass_context
def keys_create(ctx, name, password):
    """Create a new encrypted organizer key"""
    from fairalloc.crypto import generate_keypair, bytes_to_hex

    kp = generate_keypair()

    key_path = ctx.obj["data_dir"] / "keys" / f"{name}.json"
    if key_path.exists():
        raise click.ClickException(f"Key file already exists: {key_path}")
    key_path.parent.mkdir(parents=True, exist_ok=True)

    key_data = {
        "name": name,
        "address": kp.address,
        "public_key": bytes_to_hex(kp.public_key),
        "encrypted_private_key": _fernet_for(name, password).encrypt(kp.private_key).decode('utf-8'),
    }
    key_path.write_text(json.dumps(key_data, indent=2))

    click.echo(f"✓ Organizer key created: {name}")
    click.echo(f"  Address: {kp.address}")
    click.echo(f"  Saved to: {key_path}")


def _load_keypair(data_dir: Path, name: str, password: str):
    from fairalloc.crypto import KeyPair, hex_to_bytes, private_key_to_public_key

    key_path = data_dir / "keys" / f"{name}.json"
    if not key_path.exists():
        raise click.ClickException(f"No key named {name} in {key_path.parent}")

    key_data = json.loads(key_path.read_text())
    private_key = decrypt_key_file(key_data, name, password)
    if private_key is None:
        raise click.ClickException("Wrong password")

    public_key = private_key_to_public_key(private_key)
    if public_key != hex_to_bytes(key_data["public_key"]):
        raise click.ClickException(f"Key file {key_path} is corrupted")
    return KeyPair(private_key=private_key, public_key=public_key)


# =============================================================================
# Commit Command
# =============================================================================


@cli.command("commit")
@click.option("--seed", default=None, help="Hex seed (random if omitted)")
@click.option("--nonce", default=None, help="Hex nonce (random if omitted)")
def commit(seed, nonce):
    """Compute a registration commitment SHA256(seed || nonce)"""
    from fairalloc.crypto import hex_to_bytes
    from fairalloc.core.commit_reveal import create_commitment_pair

    try:
        seed_bytes = hex_to_bytes(seed) if seed else None
        nonce_bytes = hex_to_bytes(nonce) if nonce else None
    except ValueError:
        raise click.ClickException("seed and nonce must be hex")

    commitment, seed_bytes, nonce_bytes = create_commitment_pair(seed_bytes, nonce_bytes)
    click.echo(json.dumps({
        "commitment": commitment.hex(),
        "seed": seed_bytes.hex(),
        "nonce": nonce_bytes.hex(),
    }, indent=2))


# =============================================================================
# Round Commands
# =============================================================================


@cli.group("round")
def round_group():
    """Allocation round commands"""
    pass


@round_group.command("simulate")
@click.argument("round_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--out", "out_path", default=None, type=click.Path(dir_okay=False), help="Write the audit record here")
@click.option("--key", "key_name", default=None, help="Organizer key name (ephemeral key if omitted)")
@click.option("--password", default=None, hide_input=True, help="Organizer key password")
@click.option("--persist", is_flag=True, help="Store the round in the SQLite audit store")
@click.pass_context
def round_simulate(ctx, round_file, out_path, key_name, password, persist):
    """Run a scripted round on a simulated ledger"""
    from pydantic import ValidationError

    from fairalloc.crypto import generate_keypair, hex_to_bytes
    from fairalloc.core.allocation.engine import AllocationEngine
    from fairalloc.core.capability import OrganizerCapability
    from fairalloc.core.commit_reveal import compute_commitment
    from fairalloc.core.config import RoundDefinition
    from fairalloc.core.entropy import EntropySource, SimulatedLedger
    from fairalloc.core.errors import AllocationError
    from fairalloc.core.storage import StorageManager
    from fairalloc.core.verification import verify_allocation

    config = ctx.obj["config"]

    try:
        definition = RoundDefinition.model_validate(json.loads(Path(round_file).read_text()))
    except (ValidationError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Invalid round file: {e}")

    if key_name:
        if password is None:
            password = click.prompt("Password", hide_input=True)
        kp = _load_keypair(ctx.obj["data_dir"], key_name, password)
    else:
        kp = generate_keypair()
    capability = OrganizerCapability.issue(kp)

    storage = StorageManager(ctx.obj["data_dir"]) if (persist or config.persist_audit) else None
    ledger = SimulatedLedger(genesis_seed=definition.genesis_seed.encode())
    engine = AllocationEngine(ledger, kp.public_key, config=config, storage=storage)
    tier_id = definition.tier_id

    try:
        engine.initialize_round(
            capability,
            tier_id,
            definition.strategy,
            definition.total_allocations,
            definition.finalization_sequence,
            definition.reveal_start_sequence,
            definition.reveal_end_sequence,
            definition.max_entries_per_participant,
            definition.minimum_lock_period,
            definition.rate_limit_window,
            rate_limit_max_entries=definition.rate_limit_max_entries,
            require_commitment=definition.require_commitment,
            whitelist=definition.whitelist,
            entropy_source=EntropySource.from_name(definition.entropy_source) if definition.entropy_source else None,
        )
    except (AllocationError, ValueError) as e:
        raise click.ClickException(f"Round rejected: {e}")

    click.echo(f"Tier {tier_id}: {definition.strategy}, {definition.total_allocations} slots, "
               f"{len(definition.entries)} scripted entries")

    accepted = []

    def register(spec):
        ledger.advance_to(spec.registered_at_sequence)
        commitment = None
        if spec.committed:
            commitment = compute_commitment(hex_to_bytes(spec.seed), hex_to_bytes(spec.nonce))
        try:
            engine.register_entry(tier_id, spec.participant_id, commitment, origin=spec.origin)
            accepted.append(spec)
        except (AllocationError, ValueError) as e:
            click.echo(f"  ✗ {spec.participant_id} rejected at {ledger.latest_sequence()}: {e}")

    scripted = sorted(definition.entries, key=lambda e: e.registered_at_sequence)
    early = [s for s in scripted if s.registered_at_sequence < definition.reveal_start_sequence]
    late = [s for s in scripted if s.registered_at_sequence >= definition.reveal_start_sequence]

    # Commit phase
    for spec in early:
        register(spec)

    # Reveal phase, then registrations scripted at or after the window opens
    to_reveal = [s for s in accepted if s.committed and s.reveal]
    if to_reveal:
        ledger.advance_to(definition.reveal_start_sequence)
        for spec in to_reveal:
            try:
                ok = engine.reveal(tier_id, spec.participant_id, hex_to_bytes(spec.seed), hex_to_bytes(spec.nonce))
            except AllocationError as e:
                click.echo(f"  ✗ reveal by {spec.participant_id} failed: {e}")
                continue
            if not ok:
                click.echo(f"  ✗ reveal by {spec.participant_id} did not match its commitment")

    for spec in late:
        register(spec)

    # Allocation
    ledger.advance_to(definition.finalization_sequence + definition.minimum_lock_period)
    try:
        outputs = engine.generate_randomness(tier_id)
        engine.execute_allocation(tier_id)
        winners = engine.finalize_round(capability, tier_id)
    except AllocationError as e:
        raise click.ClickException(f"Allocation failed: {e}")
    finally:
        if storage is not None:
            storage.close()

    click.echo(f"✓ {len(outputs)} randomness outputs, {len(winners)} winners "
               f"(fairness {engine.get_fairness(tier_id):.2f})")
    for result in winners:
        ref = "-" if result.proof_reference is None else result.proof_reference
        click.echo(f"  #{result.rank:<3} {result.participant_id}  proof={ref}")

    if out_path:
        record = engine.export_audit(tier_id)
        valid, err = verify_allocation(record, ledger.header(definition.finalization_sequence))
        if not valid:
            raise click.ClickException(f"Audit self-check failed: {err}")
        Path(out_path).write_text(json.dumps(record.to_dict(), indent=2))
        click.echo(f"  Audit written to {out_path}")


# =============================================================================
# Audit Commands
# =============================================================================


@cli.group()
def audit():
    """Audit commands"""
    pass


@audit.command("verify")
@click.argument("audit_file", type=click.Path(exists=True, dir_okay=False))
def audit_verify(audit_file):
    """Replay an audit record and check every proof and result"""
    from fairalloc.core.verification import RoundAudit, verify_allocation

    try:
        record = RoundAudit.from_dict(json.loads(Path(audit_file).read_text()))
    except (KeyError, ValueError, TypeError) as e:
        raise click.ClickException(f"Malformed audit record: {e}")

    valid, err = verify_allocation(record)
    if not valid:
        click.echo(f"✗ Audit failed: {err}")
        raise SystemExit(1)

    winners = [r for r in record.results if r.is_winner]
    click.echo(f"✓ Tier {record.config.tier_id} verified: {len(record.randomness)} proofs, "
               f"{len(winners)} winners")


@audit.command("export")
@click.argument("tier_id", type=int)
@click.option("--out", "out_path", default=None, type=click.Path(dir_okay=False), help="Output file (stdout if omitted)")
@click.pass_context
def audit_export(ctx, tier_id, out_path):
    """Export a stored tier's audit record"""
    from fairalloc.core.storage import StorageManager

    storage = StorageManager(ctx.obj["data_dir"])
    record = storage.load_audit(tier_id)
    storage.close()
    if record is None:
        raise click.ClickException(f"No stored audit for tier {tier_id}")

    text = json.dumps(record, indent=2)
    if out_path:
        Path(out_path).write_text(text)
        click.echo(f"✓ Audit for tier {tier_id} written to {out_path}")
    else:
        click.echo(text)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
