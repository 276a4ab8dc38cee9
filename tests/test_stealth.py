import dataclasses

import pytest

MINT = "con_nft_1"
CIPHER_KEY = 2024


def configure_asset(stealth, client_module, *, owner="alice", method="freeze", mint=MINT):
    keypair = client_module.ElGamalKeypair.generate()
    params = client_module.build_configure_metadata(keypair, CIPHER_KEY, "ipfs://asset", method)
    stealth.configure_metadata(mint=mint, signer=owner, **params)
    return keypair


def publish_key(stealth, client_module, wallet, mint=MINT):
    keypair = client_module.ElGamalKeypair.generate()
    stealth.publish_elgamal_pubkey(mint=mint, elgamal_pk=keypair.pubkey.hex(), signer=wallet)
    return keypair


def prepare_transfer(stealth, client_module, owner_key, recipient, *, owner="alice", value=CIPHER_KEY):
    recipient_key = publish_key(stealth, client_module, recipient)
    stealth.init_transfer(mint=MINT, recipient=recipient, signer=owner)
    chunk = client_module.build_transfer_chunk(
        owner_key,
        stealth.get_stealth(mint=MINT),
        recipient_key.pubkey.hex(),
        value,
    )
    return recipient_key, chunk["transfer"]


def run_slow_path(crank, client_module, transfer_args, *, signer="alice", prefix="slow", cranks=None):
    transfer = client_module.TransferData.from_dict(transfer_args)
    ids = {name: prefix + "-" + name for name in ("program", "input", "compute")}
    setup = client_module.transfer_chunk_slow_setup(transfer, ids["program"], ids["input"], ids["compute"])

    crank.initialize_buffer(
        buffer_id=ids["program"],
        kind=client_module.INSTRUCTION_BUFFER,
        size=setup["instruction_size"],
        refs=[],
        signer=signer,
    )
    for write in setup["instruction_writes"]:
        crank.write_bytes(buffer_id=ids["program"], signer=signer, **write)

    crank.initialize_buffer(
        buffer_id=ids["input"],
        kind=client_module.INPUT_BUFFER,
        size=setup["input_size"],
        refs=[],
        signer=signer,
    )
    crank.write_input_buffer(buffer_id=ids["input"], signer=signer, **setup["input_args"])

    crank.initialize_buffer(
        buffer_id=ids["compute"],
        kind=client_module.COMPUTE_BUFFER,
        size=setup["compute_size"],
        refs=[ids["program"], ids["input"]],
        signer=signer,
    )
    calls = setup["cranks"] if cranks is None else setup["cranks"][:cranks]
    for call in calls:
        crank.crank_compute(signer=signer, **call)

    return {
        "instruction_buffer": ids["program"],
        "input_buffer": ids["input"],
        "compute_buffer": ids["compute"],
    }


def flip_response(client_module, transfer_args, field):
    transfer = client_module.TransferData.from_dict(transfer_args)
    proof = client_module.EqualityProof.from_bytes(transfer.equality_proof)
    flipped = dataclasses.replace(proof, **{field: (getattr(proof, field) + 1) % client_module.L})
    return dataclasses.replace(transfer, equality_proof=flipped.to_bytes()).to_dict()


def torsioned_transfer(client_module, owner_key, dst_pubkey, src_ciphertext, value=CIPHER_KEY):
    # adds the order-2 point (0, -1) to the destination commitment and keeps
    # drawing nonces until the challenge is even, so c times it vanishes
    torsion = (client_module.p - 1).to_bytes(32, "little")
    opening = client_module.random_scalar()
    honest = client_module.encrypt(dst_pubkey, value, opening)
    dst_ciphertext = client_module.point_add(honest[:32], torsion) + honest[32:]

    while True:
        y_s = client_module.random_scalar()
        y_r = client_module.random_scalar()
        y_0 = client_module.point_mul(y_s, owner_key.pubkey)
        y_1 = client_module.point_mul(y_r, dst_pubkey)
        y_2 = client_module.point_sub(
            client_module.point_mul(y_s, src_ciphertext[32:]),
            client_module.point_mul(y_r, client_module.H),
        )
        c = client_module.transfer_transcript(
            src_ciphertext, dst_ciphertext, owner_key.pubkey, dst_pubkey, y_0, y_1, y_2
        ).challenge_scalar("c")
        if c % 2 == 0:
            break

    proof = client_module.EqualityProof(
        y_0,
        y_1,
        y_2,
        (c * owner_key.secret + y_s) % client_module.L,
        (c * opening + y_r) % client_module.L,
    )
    return client_module.TransferData(
        owner_key.pubkey, dst_pubkey, src_ciphertext, dst_ciphertext, proof.to_bytes()
    ).to_dict()


def test_dsl_matches_client(stealth, client_module):
    dsl = stealth.get_dsl()
    assert dsl["program"] == client_module.DSL.hex()
    assert dsl["count"] == 294


def test_configure_metadata(stealth, funded, client_module):
    keypair = configure_asset(stealth, client_module)

    record = stealth.get_stealth(mint=MINT)
    assert record["authority"] == "alice"
    assert record["holder"] == "alice"
    assert record["elgamal_pk"] == keypair.pubkey.hex()
    assert record["method"] == "freeze"
    assert client_module.decrypt(keypair, bytes.fromhex(record["encrypted_cipher_key"])) == CIPHER_KEY

    with pytest.raises(AssertionError):
        configure_asset(stealth, client_module)


def test_configure_rejects_unknown_method(stealth, funded, client_module):
    with pytest.raises(AssertionError):
        configure_asset(stealth, client_module, method="burn")


def test_elgamal_pubkey_publish_and_close(stealth, funded, client_module):
    before = funded.balance_of(address="bob")
    keypair = publish_key(stealth, client_module, "bob")
    assert stealth.get_elgamal_pubkey(wallet="bob", mint=MINT) == keypair.pubkey.hex()

    with pytest.raises(AssertionError):
        publish_key(stealth, client_module, "bob")

    stealth.close_elgamal_pubkey(mint=MINT, signer="bob")
    assert stealth.get_elgamal_pubkey(wallet="bob", mint=MINT) is None
    assert funded.balance_of(address="bob") == before


def test_init_transfer_requires_recipient_key(stealth, funded, client_module):
    configure_asset(stealth, client_module)

    with pytest.raises(AssertionError):
        stealth.init_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "uninitialized"


def test_only_holder_can_init_transfer(stealth, funded, client_module):
    configure_asset(stealth, client_module)
    publish_key(stealth, client_module, "bob")

    with pytest.raises(AssertionError):
        stealth.init_transfer(mint=MINT, recipient="bob", signer="carol")


def test_fast_transfer_moves_key_to_recipient(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    before = funded.balance_of(address="alice")
    bob_key, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"

    stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "verified"

    stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")

    record = stealth.get_stealth(mint=MINT)
    assert record["holder"] == "bob"
    assert record["elgamal_pk"] == bob_key.pubkey.hex()
    assert client_module.decrypt(bob_key, bytes.fromhex(record["encrypted_cipher_key"])) == CIPHER_KEY
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "finalized"
    assert funded.balance_of(address="alice") == before


def test_new_holder_can_transfer_on(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    bob_key, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")
    stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="alice")
    stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")

    carol_key, transfer = prepare_transfer(stealth, client_module, bob_key, "carol", owner="bob")
    stealth.transfer_chunk(mint=MINT, recipient="carol", transfer=transfer, signer="bob")
    stealth.fini_transfer(mint=MINT, recipient="carol", signer="bob")

    record = stealth.get_stealth(mint=MINT)
    assert record["holder"] == "carol"
    assert client_module.decrypt(carol_key, bytes.fromhex(record["encrypted_cipher_key"])) == CIPHER_KEY


def test_fini_before_verification_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    prepare_transfer(stealth, client_module, owner_key, "bob")

    with pytest.raises(AssertionError, match="NotReady"):
        stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"
    assert stealth.get_stealth(mint=MINT)["holder"] == "alice"


def test_proof_for_other_value_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob", value=CIPHER_KEY + 1)

    with pytest.raises(AssertionError, match="VerificationFailed"):
        stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"


def test_proof_against_other_ciphertext_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    bob_key = publish_key(stealth, client_module, "bob")
    stealth.init_transfer(mint=MINT, recipient="bob", signer="alice")

    forged_source = client_module.encrypt(owner_key.pubkey, CIPHER_KEY)
    transfer = client_module.build_transfer_data(owner_key, bob_key.pubkey, forged_source, CIPHER_KEY)

    with pytest.raises(AssertionError):
        stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer.to_dict(), signer="alice")


def test_transfer_chunk_by_other_account_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")

    with pytest.raises(AssertionError):
        stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="bob")


def test_second_init_while_pending_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    prepare_transfer(stealth, client_module, owner_key, "bob")

    with pytest.raises(AssertionError):
        stealth.init_transfer(mint=MINT, recipient="bob", signer="alice")


def test_cancel_refunds_and_allows_retry(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    before = funded.balance_of(address="alice")
    prepare_transfer(stealth, client_module, owner_key, "bob")

    stealth.cancel_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "abandoned"
    assert funded.balance_of(address="alice") == before

    with pytest.raises(AssertionError):
        stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")

    stealth.init_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"


def test_stale_verification_cannot_finalize(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, to_bob = prepare_transfer(stealth, client_module, owner_key, "bob")
    _, to_carol = prepare_transfer(stealth, client_module, owner_key, "carol")
    stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=to_bob, signer="alice")
    stealth.transfer_chunk(mint=MINT, recipient="carol", transfer=to_carol, signer="alice")

    stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")
    with pytest.raises(AssertionError, match="Unauthorized"):
        stealth.fini_transfer(mint=MINT, recipient="carol", signer="alice")
    assert stealth.get_stealth(mint=MINT)["holder"] == "bob"


def test_escrow_is_paid_to_authority_on_fini(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    stealth.deposit_escrow(mint=MINT, amount=5000, signer="carol")
    assert stealth.get_stealth(mint=MINT)["escrow"] == 5000

    before = funded.balance_of(address="alice")
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")
    stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="alice")
    stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")

    assert funded.balance_of(address="alice") == before + 5000
    assert stealth.get_stealth(mint=MINT)["escrow"] == 0


def test_frozen_asset_moves_only_through_transfer(stealth, funded, client_module):
    configure_asset(stealth, client_module, method="freeze")
    with pytest.raises(AssertionError):
        stealth.transfer_asset(mint=MINT, to="bob", signer="alice")

    configure_asset(stealth, client_module, method="none", mint="con_nft_2")
    stealth.transfer_asset(mint="con_nft_2", to="bob", signer="alice")
    assert stealth.get_stealth(mint="con_nft_2")["holder"] == "bob"


def test_slow_transfer_path(stealth, crank, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    bob_key, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")

    buffers = run_slow_path(crank, client_module, transfer)
    assert crank.get_compute_status(buffer_id=buffers["compute_buffer"])["results"] == [True, True, True]

    stealth.transfer_chunk_slow(mint=MINT, recipient="bob", transfer=transfer, signer="alice", **buffers)
    stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")

    record = stealth.get_stealth(mint=MINT)
    assert record["holder"] == "bob"
    assert client_module.decrypt(bob_key, bytes.fromhex(record["encrypted_cipher_key"])) == CIPHER_KEY


def test_slow_transfer_needs_finished_cranks(stealth, crank, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")

    buffers = run_slow_path(crank, client_module, transfer, cranks=25)
    with pytest.raises(AssertionError, match="NotReady"):
        stealth.transfer_chunk_slow(mint=MINT, recipient="bob", transfer=transfer, signer="alice", **buffers)
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"


def test_slow_transfer_rejects_buffers_for_other_proof(stealth, crank, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    bob_key, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")

    record = stealth.get_stealth(mint=MINT)
    other = client_module.build_transfer_data(
        owner_key,
        bob_key.pubkey,
        bytes.fromhex(record["encrypted_cipher_key"]),
        CIPHER_KEY,
    ).to_dict()
    buffers = run_slow_path(crank, client_module, other)

    with pytest.raises(AssertionError, match="BufferMismatch"):
        stealth.transfer_chunk_slow(mint=MINT, recipient="bob", transfer=transfer, signer="alice", **buffers)

    stealth.transfer_chunk_slow(mint=MINT, recipient="bob", transfer=other, signer="alice", **buffers)
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "verified"


def test_mint_is_claimed_by_first_configurer(stealth, funded, client_module):
    configure_asset(stealth, client_module, owner="alice")

    with pytest.raises(AssertionError, match="InvalidState"):
        configure_asset(stealth, client_module, owner="carol")
    assert stealth.get_stealth(mint=MINT)["authority"] == "alice"


def test_torsioned_destination_commitment_is_rejected(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    bob_key = publish_key(stealth, client_module, "bob")
    stealth.init_transfer(mint=MINT, recipient="bob", signer="alice")

    src_ciphertext = bytes.fromhex(stealth.get_stealth(mint=MINT)["encrypted_cipher_key"])
    transfer = torsioned_transfer(client_module, owner_key, bob_key.pubkey, src_ciphertext)

    with pytest.raises(AssertionError, match="MalformedProof"):
        stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=transfer, signer="alice")
    assert stealth.get_transfer(mint=MINT, recipient="bob")["state"] == "awaiting_verification"

    with pytest.raises(AssertionError, match="NotReady"):
        stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_stealth(mint=MINT)["elgamal_pk"] == owner_key.pubkey.hex()


def test_flipped_response_fails_fast_path(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")
    flipped = flip_response(client_module, transfer, "sh_1")

    with pytest.raises(AssertionError, match="VerificationFailed"):
        stealth.transfer_chunk(mint=MINT, recipient="bob", transfer=flipped, signer="alice")
    with pytest.raises(AssertionError, match="NotReady"):
        stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")
    assert stealth.get_stealth(mint=MINT)["holder"] == "alice"


def test_flipped_response_fails_slow_path(stealth, crank, funded, client_module):
    owner_key = configure_asset(stealth, client_module)
    _, transfer = prepare_transfer(stealth, client_module, owner_key, "bob")
    flipped = flip_response(client_module, transfer, "rh_2")

    buffers = run_slow_path(crank, client_module, flipped)
    assert crank.get_compute_status(buffer_id=buffers["compute_buffer"])["results"] == [True, False, False]

    with pytest.raises(AssertionError, match="VerificationFailed"):
        stealth.transfer_chunk_slow(mint=MINT, recipient="bob", transfer=flipped, signer="alice", **buffers)
    with pytest.raises(AssertionError, match="NotReady"):
        stealth.fini_transfer(mint=MINT, recipient="bob", signer="alice")


def test_escrow_overflow_is_rejected(stealth, funded, client_module):
    configure_asset(stealth, client_module)
    stealth.deposit_escrow(mint=MINT, amount=5000, signer="carol")

    with pytest.raises(AssertionError, match="Overflow"):
        stealth.deposit_escrow(mint=MINT, amount=2**64 - 5000, signer="carol")
    assert stealth.get_stealth(mint=MINT)["escrow"] == 5000


def test_new_holder_replaces_stale_transfer(stealth, funded, client_module):
    owner_key = configure_asset(stealth, client_module, method="none")
    before = funded.balance_of(address="alice")
    prepare_transfer(stealth, client_module, owner_key, "bob")

    stealth.transfer_asset(mint=MINT, to="carol", signer="alice")
    stealth.init_transfer(mint=MINT, recipient="bob", signer="carol")

    pending = stealth.get_transfer(mint=MINT, recipient="bob")
    assert pending["authority"] == "carol"
    assert pending["state"] == "awaiting_verification"
    assert funded.balance_of(address="alice") == before

    with pytest.raises(AssertionError, match="InvalidState"):
        stealth.init_transfer(mint=MINT, recipient="bob", signer="carol")
