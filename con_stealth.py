"""
STEALTH TRANSFER

Private metadata for unique assets. Each asset carries a cipher key encrypted
under its holder's ElGamal pubkey. Ownership moves in three steps:
  1. init_transfer opens a transfer buffer for (recipient, mint)
  2. transfer_chunk / transfer_chunk_slow check an equality proof that the
     re-encryption under the recipient's key hides the same cipher key
  3. fini_transfer swaps key and ciphertext, moves the asset and releases
     deposits and escrow

Proof checking runs the equality-proof program on con_curve_crank, either in
one call or from compute buffers cranked beforehand.
"""

import con_currency
import con_curve_crank

# -----------------------------------------------------------------------------
# Parameters & Helpers
# -----------------------------------------------------------------------------

L = 2**252 + 27742317777372353535851937790883648493
U64_MAX = 2**64 - 1

HEX_DIGITS = '0123456789abcdef'
PROOF_DOMAIN = 'stealth-transfer-proof'

INSTRUCTION_BUFFER = 'instruction_buffer_v1'
INPUT_BUFFER = 'input_buffer_v1'

INSTRUCTION_WIDTH = 5
STATEMENT_POINTS = 11
PROOF_GROUPS = 3
WINDOWS = 64
URI_MAX = 200

OP_DECOMPRESS = 1
OP_TABLE = 2
OP_COPY_SCALAR = 3
OP_IDENTITY = 4
OP_MULTISCALAR = 5

# first statement index and size of each equation
GROUP_LAYOUT = [[0, 3], [3, 3], [6, 5]]

OVERSIGHT_METHODS = ['none', 'freeze', 'royalties']

AWAITING = 'awaiting_verification'
VERIFIED = 'verified'
FINALIZED = 'finalized'
ABANDONED = 'abandoned'

def is_hex(value: Any, length: int):
    if not isinstance(value, str) or len(value) != length:
        return False
    for ch in value:
        if ch not in HEX_DIGITS:
            return False
    return True

def hex_to_int_le(value: str):
    result = 0
    i = len(value) - 2
    while i >= 0:
        result = result * 256 + int(value[i:i + 2], 16)
        i -= 2
    return result

def int_to_hex_le(value: int, size: int):
    out = ''
    for i in range(size):
        byte = value & 255
        out += HEX_DIGITS[byte >> 4] + HEX_DIGITS[byte & 15]
        value = value >> 8
    return out

def checked_add(a: int, b: int):
    result = a + b
    assert result <= U64_MAX, 'Overflow: amount exceeds u64'
    return result

def encode_op(code: int, a: int, b: int, c: int, d: int):
    return int_to_hex_le(code, 1) + int_to_hex_le(a, 1) + int_to_hex_le(b, 1) + int_to_hex_le(c, 1) + int_to_hex_le(d, 1)

def build_dsl():
    ops = []
    for point in range(STATEMENT_POINTS):
        ops.append(encode_op(OP_DECOMPRESS, point, 0, 0, 0))
        for k in range(2, 9):
            ops.append(encode_op(OP_TABLE, point, k, 0, 0))
    for scalar in range(STATEMENT_POINTS):
        ops.append(encode_op(OP_COPY_SCALAR, scalar, 0, 0, 0))
    for group in range(PROOF_GROUPS):
        ops.append(encode_op(OP_IDENTITY, group, 0, 0, 0))
    for group in range(PROOF_GROUPS):
        for window in range(WINDOWS - 1, -1, -1):
            ops.append(encode_op(OP_MULTISCALAR, group, GROUP_LAYOUT[group][0], GROUP_LAYOUT[group][1], window))
    return ''.join(ops)

DSL_HEX = build_dsl()
DSL_INSTRUCTION_COUNT = len(DSL_HEX) // (2 * INSTRUCTION_WIDTH)

assert DSL_INSTRUCTION_COUNT == 294, 'StepCountMismatch: equality proof program has the wrong length'

# -----------------------------------------------------------------------------
# Transcript & statement
# -----------------------------------------------------------------------------

def transcript_new():
    return ['dom-sep', PROOF_DOMAIN]

def transcript_append(transcript: list, label: str, value: str):
    transcript.append(label + '=' + value)

def transcript_challenge(transcript: list, label: str):
    seed = '|'.join(transcript) + '|challenge|' + label
    return int(hashlib.sha3(seed + '|0') + hashlib.sha3(seed + '|1'), 16) % L

def parse_transfer(transfer: dict):
    for key in ['src_pubkey', 'dst_pubkey']:
        assert is_hex(transfer.get(key), 64), 'MalformedProof: ' + key + ' must be 32 byte hex'
    for key in ['src_ciphertext', 'dst_ciphertext']:
        assert is_hex(transfer.get(key), 128), 'MalformedProof: ' + key + ' must be 64 byte hex'
    proof = transfer.get('equality_proof')
    assert is_hex(proof, 320), 'MalformedProof: equality proof must be 160 byte hex'

    return {
        'src_pubkey': transfer['src_pubkey'],
        'dst_pubkey': transfer['dst_pubkey'],
        'src_ciphertext': transfer['src_ciphertext'],
        'dst_ciphertext': transfer['dst_ciphertext'],
        'y_0': proof[0:64],
        'y_1': proof[64:128],
        'y_2': proof[128:192],
        'sh_1': hex_to_int_le(proof[192:256]),
        'rh_2': hex_to_int_le(proof[256:320])
    }

def canonical(scalar: int):
    assert scalar < L, 'ScalarCanonicalizationFailure: proof scalar is not reduced'
    return scalar

def build_statement(parsed: dict):
    transcript = transcript_new()
    transcript_append(transcript, 'src-ciphertext', parsed['src_ciphertext'])
    transcript_append(transcript, 'dst-ciphertext', parsed['dst_ciphertext'])
    transcript_append(transcript, 'src-pubkey', parsed['src_pubkey'])
    transcript_append(transcript, 'dst-pubkey', parsed['dst_pubkey'])
    transcript_append(transcript, 'Y_0', parsed['y_0'])
    transcript_append(transcript, 'Y_1', parsed['y_1'])
    transcript_append(transcript, 'Y_2', parsed['y_2'])
    c = transcript_challenge(transcript, 'c')

    sh_1 = canonical(parsed['sh_1'])
    rh_2 = canonical(parsed['rh_2'])
    neg_c = (L - c) % L
    neg_one = L - 1

    pedersen_h = con_curve_crank.pedersen_base()
    points = [
        parsed['src_pubkey'], pedersen_h, parsed['y_0'],
        parsed['dst_pubkey'], parsed['dst_ciphertext'][64:], parsed['y_1'],
        parsed['dst_ciphertext'][:64], parsed['src_ciphertext'][:64],
        parsed['src_ciphertext'][64:], pedersen_h, parsed['y_2']
    ]
    scalars = []
    for scalar in [sh_1, neg_c, neg_one, rh_2, neg_c, neg_one, c, neg_c, sh_1, (L - rh_2) % L, neg_one]:
        scalars.append(int_to_hex_le(scalar, 32))

    return {'points': points, 'scalars': scalars}

def all_identity(results: list):
    if len(results) != PROOF_GROUPS:
        return False
    for ok in results:
        if not ok:
            return False
    return True

# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

metadata = Hash()

# mint -> stealth record
stealth = Hash()

# (wallet, mint) -> published ElGamal pubkey record
elgamal_keys = Hash()

# (recipient, mint) -> transfer buffer
transfers = Hash()

next_event_id = Variable()

MetadataConfiguredEvent = LogEvent('MetadataConfigured', {
    'mint': {'type': str, 'idx': True},
    'authority': {'type': str, 'idx': True},
    'method': {'type': str},
    'event_id': {'type': int, 'idx': True}
})

TransferInitializedEvent = LogEvent('TransferInitialized', {
    'mint': {'type': str, 'idx': True},
    'authority': {'type': str, 'idx': True},
    'recipient': {'type': str, 'idx': True},
    'event_id': {'type': int}
})

TransferVerifiedEvent = LogEvent('TransferVerified', {
    'mint': {'type': str, 'idx': True},
    'recipient': {'type': str, 'idx': True},
    'path': {'type': str},
    'event_id': {'type': int, 'idx': True}
})

TransferFinalizedEvent = LogEvent('TransferFinalized', {
    'mint': {'type': str, 'idx': True},
    'authority': {'type': str, 'idx': True},
    'recipient': {'type': str, 'idx': True},
    'escrow': {'type': int},
    'event_id': {'type': int}
})

TransferCancelledEvent = LogEvent('TransferCancelled', {
    'mint': {'type': str, 'idx': True},
    'recipient': {'type': str, 'idx': True},
    'event_id': {'type': int, 'idx': True}
})

# -----------------------------------------------------------------------------
# Construction
# -----------------------------------------------------------------------------

@construct
def seed():
    metadata['operator'] = ctx.caller
    metadata['record_deposit'] = 200
    metadata['pubkey_deposit'] = 100
    metadata['transfer_deposit'] = 300
    next_event_id.set(1)

# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------

@export
def get_metadata():
    return {
        'operator': metadata['operator'],
        'record_deposit': metadata['record_deposit'],
        'pubkey_deposit': metadata['pubkey_deposit'],
        'transfer_deposit': metadata['transfer_deposit']
    }

@export
def change_metadata(key: str, value: Any):
    assert ctx.caller == metadata['operator'], 'Unauthorized: only operator can set metadata'
    metadata[key] = value

@export
def get_stealth(mint: str):
    return stealth[mint]

@export
def get_elgamal_pubkey(wallet: str, mint: str):
    record = elgamal_keys[wallet, mint]
    if record is None:
        return None
    return record['elgamal_pk']

@export
def get_transfer(mint: str, recipient: str):
    buffer = transfers[recipient, mint]
    if buffer is None:
        return {'state': 'uninitialized'}
    return buffer

@export
def get_dsl():
    return {'program': DSL_HEX, 'count': DSL_INSTRUCTION_COUNT}

# -----------------------------------------------------------------------------
# Internal
# -----------------------------------------------------------------------------

def next_event():
    eid = next_event_id.get()
    next_event_id.set(eid + 1)
    return eid

def charge(payer: str, amount: int):
    if amount > 0:
        con_currency.transfer_from(amount=amount, to=ctx.this, main_account=payer)
    return amount

def refund(to: str, amount: int):
    if amount > 0:
        con_currency.transfer(amount=amount, to=to)

def load_stealth(mint: str):
    record = stealth[mint]
    assert record is not None, 'InvalidState: no stealth metadata for ' + mint
    return record

def load_pending(mint: str, recipient: str):
    buffer = transfers[recipient, mint]
    assert buffer is not None, 'InvalidState: no transfer in progress'
    assert buffer['state'] != FINALIZED and buffer['state'] != ABANDONED, 'InvalidState: transfer is closed'
    assert buffer['authority'] == ctx.caller, 'Unauthorized: transfer belongs to another authority'
    return buffer

def check_transfer_data(buffer: dict, record: dict, parsed: dict):
    assert parsed['src_pubkey'] == record['elgamal_pk'], 'BufferMismatch: source pubkey is not the asset key'
    assert parsed['src_ciphertext'] == record['encrypted_cipher_key'], 'BufferMismatch: source ciphertext is not the asset cipher key'
    assert parsed['dst_pubkey'] == buffer['elgamal_pk'], 'BufferMismatch: destination pubkey is not the recipient key'

def mark_verified(mint: str, recipient: str, buffer: dict, parsed: dict, path: str):
    buffer['source_cipher_key'] = parsed['src_ciphertext']
    buffer['encrypted_cipher_key'] = parsed['dst_ciphertext']
    buffer['state'] = VERIFIED
    transfers[recipient, mint] = buffer

    TransferVerifiedEvent({
        'mint': mint,
        'recipient': recipient,
        'path': path,
        'event_id': next_event()
    })

# -----------------------------------------------------------------------------
# Metadata & keys
# -----------------------------------------------------------------------------

@export
def configure_metadata(mint: str, elgamal_pk: str, encrypted_cipher_key: str, uri: str, method: str):
    # first caller claims the mint and becomes its authority
    assert stealth[mint] is None, 'InvalidState: metadata already configured for ' + mint
    assert is_hex(elgamal_pk, 64), 'MalformedProof: elgamal pubkey must be 32 byte hex'
    assert is_hex(encrypted_cipher_key, 128), 'MalformedProof: cipher key must be 64 byte hex'
    assert len(uri) <= URI_MAX, 'InvalidArgument: uri too long'
    assert method in OVERSIGHT_METHODS, 'InvalidArgument: unknown oversight method ' + method

    deposit = charge(ctx.caller, metadata['record_deposit'])

    stealth[mint] = {
        'authority': ctx.caller,
        'holder': ctx.caller,
        'elgamal_pk': elgamal_pk,
        'encrypted_cipher_key': encrypted_cipher_key,
        'uri': uri,
        'method': method,
        'escrow': 0,
        'deposit': deposit
    }

    MetadataConfiguredEvent({
        'mint': mint,
        'authority': ctx.caller,
        'method': method,
        'event_id': next_event()
    })

@export
def publish_elgamal_pubkey(mint: str, elgamal_pk: str):
    assert elgamal_keys[ctx.caller, mint] is None, 'InvalidState: pubkey already published'
    assert is_hex(elgamal_pk, 64), 'MalformedProof: elgamal pubkey must be 32 byte hex'

    deposit = charge(ctx.caller, metadata['pubkey_deposit'])
    elgamal_keys[ctx.caller, mint] = {'elgamal_pk': elgamal_pk, 'deposit': deposit}

@export
def close_elgamal_pubkey(mint: str):
    record = elgamal_keys[ctx.caller, mint]
    assert record is not None, 'InvalidState: no pubkey published'
    elgamal_keys[ctx.caller, mint] = None
    refund(ctx.caller, record['deposit'])

# -----------------------------------------------------------------------------
# Transfers
# -----------------------------------------------------------------------------

@export
def init_transfer(mint: str, recipient: str):
    record = load_stealth(mint)
    assert record['holder'] == ctx.caller, 'Unauthorized: only the holder can transfer'
    assert recipient != ctx.caller, 'InvalidArgument: cannot transfer to self'

    key = elgamal_keys[recipient, mint]
    assert key is not None, 'NotReady: recipient has not published an elgamal pubkey'

    existing = transfers[recipient, mint]
    if existing is not None and existing['state'] != FINALIZED and existing['state'] != ABANDONED:
        # only a transfer left behind by a former holder can be replaced
        assert existing['authority'] != ctx.caller, 'InvalidState: transfer already in progress'
        refund(existing['payer'], existing['deposit'])
        TransferCancelledEvent({
            'mint': mint,
            'recipient': recipient,
            'event_id': next_event()
        })

    deposit = charge(ctx.caller, metadata['transfer_deposit'])

    transfers[recipient, mint] = {
        'authority': ctx.caller,
        'payer': ctx.caller,
        'mint': mint,
        'recipient': recipient,
        'elgamal_pk': key['elgamal_pk'],
        'encrypted_cipher_key': None,
        'source_cipher_key': None,
        'state': AWAITING,
        'deposit': deposit
    }

    TransferInitializedEvent({
        'mint': mint,
        'authority': ctx.caller,
        'recipient': recipient,
        'event_id': next_event()
    })

@export
def transfer_chunk(mint: str, recipient: str, transfer: dict):
    buffer = load_pending(mint, recipient)
    assert buffer['state'] == AWAITING, 'InvalidState: transfer is not awaiting verification'
    record = load_stealth(mint)

    parsed = parse_transfer(transfer)
    check_transfer_data(buffer, record, parsed)
    statement = build_statement(parsed)

    results = con_curve_crank.execute_program(
        instructions=DSL_HEX,
        points=statement['points'],
        scalars=statement['scalars']
    )
    assert all_identity(results), 'VerificationFailed: equality proof does not hold'

    mark_verified(mint, recipient, buffer, parsed, 'direct')

@export
def transfer_chunk_slow(mint: str, recipient: str, transfer: dict,
                        instruction_buffer: str, input_buffer: str, compute_buffer: str):
    buffer = load_pending(mint, recipient)
    assert buffer['state'] == AWAITING, 'InvalidState: transfer is not awaiting verification'
    record = load_stealth(mint)

    parsed = parse_transfer(transfer)
    check_transfer_data(buffer, record, parsed)
    statement = build_statement(parsed)

    program = con_curve_crank.get_buffer(buffer_id=instruction_buffer)
    assert program is not None and program['kind'] == INSTRUCTION_BUFFER, 'InvalidBuffer: unknown instruction buffer'
    assert program['finalized'] and program['data'] == DSL_HEX, 'BufferMismatch: instruction buffer does not hold the equality proof program'

    source = con_curve_crank.get_buffer(buffer_id=input_buffer)
    assert source is not None and source['kind'] == INPUT_BUFFER, 'InvalidBuffer: unknown input buffer'
    assert source['points'] == statement['points'], 'BufferMismatch: input points do not match this transfer'
    assert source['scalars'] == statement['scalars'], 'BufferMismatch: input scalars do not match this transfer'

    status = con_curve_crank.get_compute_status(buffer_id=compute_buffer)
    assert status['owner'] == ctx.caller, 'Unauthorized: compute buffer belongs to another account'
    assert status['instruction_buffer'] == instruction_buffer, 'BufferMismatch: compute buffer ran another program'
    assert status['input_buffer'] == input_buffer, 'BufferMismatch: compute buffer read another input buffer'
    assert status['done'] and status['cursor'] == DSL_INSTRUCTION_COUNT, 'NotReady: compute buffer has not been fully cranked'
    assert all_identity(status['results']), 'VerificationFailed: equality proof does not hold'

    mark_verified(mint, recipient, buffer, parsed, 'cranked')

@export
def fini_transfer(mint: str, recipient: str):
    buffer = load_pending(mint, recipient)
    assert buffer['state'] == VERIFIED, 'NotReady: transfer has not been verified'

    record = load_stealth(mint)
    assert record['holder'] == ctx.caller, 'Unauthorized: authority no longer holds the asset'
    assert record['encrypted_cipher_key'] == buffer['source_cipher_key'], 'InvalidState: cipher key changed since verification'

    escrow = record['escrow']
    record['elgamal_pk'] = buffer['elgamal_pk']
    record['encrypted_cipher_key'] = buffer['encrypted_cipher_key']
    record['holder'] = recipient
    record['escrow'] = 0
    stealth[mint] = record

    transfers[recipient, mint] = {
        'authority': buffer['authority'],
        'mint': mint,
        'recipient': recipient,
        'state': FINALIZED
    }

    refund(buffer['payer'], buffer['deposit'])
    refund(buffer['authority'], escrow)

    TransferFinalizedEvent({
        'mint': mint,
        'authority': buffer['authority'],
        'recipient': recipient,
        'escrow': escrow,
        'event_id': next_event()
    })

@export
def cancel_transfer(mint: str, recipient: str):
    buffer = load_pending(mint, recipient)

    transfers[recipient, mint] = {
        'authority': buffer['authority'],
        'mint': mint,
        'recipient': recipient,
        'state': ABANDONED
    }
    refund(buffer['payer'], buffer['deposit'])

    TransferCancelledEvent({
        'mint': mint,
        'recipient': recipient,
        'event_id': next_event()
    })

# -----------------------------------------------------------------------------
# Asset movement
# -----------------------------------------------------------------------------

@export
def deposit_escrow(mint: str, amount: int):
    assert amount > 0, 'InvalidArgument: amount must be positive'
    record = load_stealth(mint)
    total = checked_add(record['escrow'], amount)

    con_currency.transfer_from(amount=amount, to=ctx.this, main_account=ctx.caller)
    record['escrow'] = total
    stealth[mint] = record

@export
def transfer_asset(mint: str, to: str):
    record = load_stealth(mint)
    assert record['holder'] == ctx.caller, 'Unauthorized: only the holder can move the asset'
    assert record['method'] != 'freeze', 'Unauthorized: frozen assets move only through fini_transfer'
    assert to != ctx.caller, 'InvalidArgument: cannot transfer to self'
    record['holder'] = to
    stealth[mint] = record
