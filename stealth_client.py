"""
Wallet-side helpers for con_stealth / con_curve_crank.

Encrypts cipher keys under ElGamal pubkeys, proves that two ciphertexts hide
the same value, and prepares everything the chain needs to check that proof:
the statement, the buffer contents and the crank schedule.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from nacl import bindings
from nacl.exceptions import CryptoError

logger = logging.getLogger(__name__)

# ---- Chain-constant parameters & helpers (mirror contracts) ----

p = 2**255 - 19
L = 2**252 + 27742317777372353535851937790883648493
IDENTITY = b'\x01' + bytes(31)

PROOF_DOMAIN = 'stealth-transfer-proof'

INSTRUCTION_BUFFER = 'instruction_buffer_v1'
INPUT_BUFFER = 'input_buffer_v1'
COMPUTE_BUFFER = 'compute_buffer_v1'

HEADER_SIZE = 128
INSTRUCTION_WIDTH = 5
TABLE_SIZE = 8 * 4 * 32
WINDOWS = 64
PROOF_GROUPS = 3
DECOMPRESSION_SPACE = 12
STATEMENT_POINTS = 11
PROOF_SIZE = 5 * 32
INSTRUCTION_CHUNK = 800

DEFAULT_BUDGET = 1000000
MAX_BUDGET = 1400000

OP_DECOMPRESS = 1
OP_TABLE = 2
OP_COPY_SCALAR = 3
OP_IDENTITY = 4
OP_MULTISCALAR = 5

# (first statement index, size) of each equation
GROUP_LAYOUT = ((0, 3), (3, 3), (6, 5))

# five batches of two decompressions with their tables, one batch with the
# last decompression, every scalar copy and the accumulator resets, then the
# windowed multiscalar steps
STANDARD_BATCHES = (16,) * 5 + (22,) + ((11,) * 5 + (9,)) * 2 + (8,) * 8
PLAN_INVOCATIONS = 26


class StealthError(ValueError):
    pass


class MalformedProof(StealthError):
    pass


class ScalarCanonicalizationFailure(StealthError):
    pass


class StepCountMismatch(StealthError):
    pass


class BudgetExceeded(StealthError):
    pass


def sha3_hex(s: str) -> str:
    # Matches Xian env semantics for non-hex input
    return hashlib.sha3_256(s.encode('utf-8')).hexdigest()


def scalar_bytes(n: int) -> bytes:
    return (n % L).to_bytes(32, 'little')


def random_scalar() -> int:
    return secrets.randbelow(L - 1) + 1


def base_mul(n: int) -> bytes:
    n %= L
    if n == 0:
        return IDENTITY
    return bindings.crypto_scalarmult_ed25519_base_noclamp(scalar_bytes(n))


def point_mul(n: int, point: bytes) -> bytes:
    n %= L
    if n == 0 or point == IDENTITY:
        return IDENTITY
    return bindings.crypto_scalarmult_ed25519_noclamp(scalar_bytes(n), point)


def point_add(a: bytes, b: bytes) -> bytes:
    if a == IDENTITY:
        return b
    if b == IDENTITY:
        return a
    return bindings.crypto_core_ed25519_add(a, b)


def point_sub(a: bytes, b: bytes) -> bytes:
    if b == IDENTITY:
        return a
    return bindings.crypto_core_ed25519_sub(a, b)


def derive_pedersen_base() -> bytes:
    """
    Second generator with no known discrete log relative to the base point.
    Try-and-increment over sha3 candidates, multiplied by the cofactor; the
    chain derives the same point in con_curve_crank.pedersen_base().
    """
    counter = 0
    while True:
        y = int(sha3_hex('stealth|pedersen-h|' + str(counter)), 16) % p
        candidate = y.to_bytes(32, 'little')
        try:
            twice = bindings.crypto_core_ed25519_add(candidate, candidate)
            four = bindings.crypto_core_ed25519_add(twice, twice)
            eight = bindings.crypto_core_ed25519_add(four, four)
        except CryptoError:
            eight = None
        if eight is not None and eight != IDENTITY:
            return eight
        counter += 1


G = base_mul(1)
H = derive_pedersen_base()

# ---- ElGamal -----------------------------------------------------------------

@dataclass(frozen=True)
class ElGamalKeypair:
    secret: int
    pubkey: bytes

    @classmethod
    def generate(cls) -> 'ElGamalKeypair':
        return cls.from_secret(random_scalar())

    @classmethod
    def from_secret(cls, secret: int) -> 'ElGamalKeypair':
        secret %= L
        if secret == 0:
            raise StealthError('ElGamal secret must be non-zero')
        return cls(secret, point_mul(pow(secret, L - 2, L), H))


def encrypt(pubkey: bytes, value: int, opening: Optional[int] = None) -> bytes:
    """
    64 byte ciphertext: commitment value*G + r*H followed by handle r*pubkey.
    """
    if opening is None:
        opening = random_scalar()
    commitment = point_add(base_mul(value), point_mul(opening, H))
    handle = point_mul(opening, pubkey)
    return commitment + handle


def decrypt(keypair: ElGamalKeypair, ciphertext: bytes, bound: int = 2**16) -> int:
    if len(ciphertext) != 64:
        raise MalformedProof('ciphertext must be 64 bytes')
    commitment, handle = ciphertext[:32], ciphertext[32:]
    target = point_sub(commitment, point_mul(keypair.secret, handle))

    acc = IDENTITY
    for value in range(bound):
        if acc == target:
            return value
        acc = point_add(acc, G)
    raise StealthError('ciphertext does not decrypt below %d' % bound)

# ---- Transcript ----------------------------------------------------------------

class Transcript:
    """
    Fiat-Shamir transcript. Same string layout and sha3 challenge as the chain.
    """
    def __init__(self, domain: str = PROOF_DOMAIN):
        self._entries = ['dom-sep', domain]

    def append(self, label: str, value: bytes):
        self._entries.append(label + '=' + value.hex())

    def challenge_scalar(self, label: str) -> int:
        seed = '|'.join(self._entries) + '|challenge|' + label
        return int(sha3_hex(seed + '|0') + sha3_hex(seed + '|1'), 16) % L


def transfer_transcript(src_ciphertext: bytes, dst_ciphertext: bytes,
                        src_pubkey: bytes, dst_pubkey: bytes,
                        y_0: bytes, y_1: bytes, y_2: bytes) -> Transcript:
    transcript = Transcript()
    transcript.append('src-ciphertext', src_ciphertext)
    transcript.append('dst-ciphertext', dst_ciphertext)
    transcript.append('src-pubkey', src_pubkey)
    transcript.append('dst-pubkey', dst_pubkey)
    transcript.append('Y_0', y_0)
    transcript.append('Y_1', y_1)
    transcript.append('Y_2', y_2)
    return transcript

# ---- Equality proof --------------------------------------------------------------

@dataclass(frozen=True)
class EqualityProof:
    y_0: bytes
    y_1: bytes
    y_2: bytes
    sh_1: int
    rh_2: int

    def to_bytes(self) -> bytes:
        return (self.y_0 + self.y_1 + self.y_2
                + self.sh_1.to_bytes(32, 'little')
                + self.rh_2.to_bytes(32, 'little'))

    @classmethod
    def from_bytes(cls, data: bytes) -> 'EqualityProof':
        if len(data) != PROOF_SIZE:
            raise MalformedProof('equality proof must be %d bytes, got %d' % (PROOF_SIZE, len(data)))
        points = [data[0:32], data[32:64], data[64:96]]
        for point in points:
            if not bindings.crypto_core_ed25519_is_valid_point(point):
                raise MalformedProof('equality proof point is not a valid curve point')
        return cls(points[0], points[1], points[2],
                   int.from_bytes(data[96:128], 'little'),
                   int.from_bytes(data[128:160], 'little'))


@dataclass(frozen=True)
class TransferData:
    src_pubkey: bytes
    dst_pubkey: bytes
    src_ciphertext: bytes
    dst_ciphertext: bytes
    equality_proof: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            'src_pubkey': self.src_pubkey.hex(),
            'dst_pubkey': self.dst_pubkey.hex(),
            'src_ciphertext': self.src_ciphertext.hex(),
            'dst_ciphertext': self.dst_ciphertext.hex(),
            'equality_proof': self.equality_proof.hex()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'TransferData':
        return cls(**{key: bytes.fromhex(value) for key, value in data.items()})


def build_transfer_data(src_keypair: ElGamalKeypair,
                        dst_pubkey: bytes,
                        src_ciphertext: bytes,
                        value: int,
                        opening: Optional[int] = None) -> TransferData:
    """
    Re-encrypts `value` (the plaintext of src_ciphertext) under dst_pubkey and
    proves both ciphertexts hide the same value.
    """
    if opening is None:
        opening = random_scalar()
    dst_ciphertext = encrypt(dst_pubkey, value, opening)

    y_s = random_scalar()
    y_r = random_scalar()
    y_0 = point_mul(y_s, src_keypair.pubkey)
    y_1 = point_mul(y_r, dst_pubkey)
    y_2 = point_sub(point_mul(y_s, src_ciphertext[32:]), point_mul(y_r, H))

    c = transfer_transcript(src_ciphertext, dst_ciphertext,
                            src_keypair.pubkey, dst_pubkey,
                            y_0, y_1, y_2).challenge_scalar('c')

    proof = EqualityProof(y_0, y_1, y_2,
                          (c * src_keypair.secret + y_s) % L,
                          (c * opening + y_r) % L)
    logger.debug('equality proof built for dst pubkey %s', dst_pubkey.hex())

    return TransferData(src_keypair.pubkey, dst_pubkey,
                        src_ciphertext, dst_ciphertext, proof.to_bytes())

# ---- Statement -------------------------------------------------------------------

@dataclass(frozen=True)
class Statement:
    points: List[bytes]
    scalars: List[int]

    def input_args(self) -> Dict[str, List[str]]:
        """
        Returns args for con_curve_crank.write_input_buffer():
            (buffer_id, points, scalars)
        """
        return {
            'points': [point.hex() for point in self.points],
            'scalars': [scalar_bytes(scalar).hex() for scalar in self.scalars]
        }


def build_statement(transfer: TransferData) -> Statement:
    """
    The three equations the chain checks, flattened to eleven (point, scalar)
    pairs; each equation holds when its multiscalar sum is the identity.
    """
    proof = EqualityProof.from_bytes(transfer.equality_proof)
    for name in ('src_pubkey', 'dst_pubkey'):
        if len(getattr(transfer, name)) != 32:
            raise MalformedProof('%s must be 32 bytes' % name)
    for name in ('src_ciphertext', 'dst_ciphertext'):
        if len(getattr(transfer, name)) != 64:
            raise MalformedProof('%s must be 64 bytes' % name)

    c = transfer_transcript(transfer.src_ciphertext, transfer.dst_ciphertext,
                            transfer.src_pubkey, transfer.dst_pubkey,
                            proof.y_0, proof.y_1, proof.y_2).challenge_scalar('c')

    for scalar in (proof.sh_1, proof.rh_2):
        if scalar >= L:
            raise ScalarCanonicalizationFailure('proof scalar is not reduced')

    points = [
        transfer.src_pubkey, H, proof.y_0,
        transfer.dst_pubkey, transfer.dst_ciphertext[32:], proof.y_1,
        transfer.dst_ciphertext[:32], transfer.src_ciphertext[:32],
        transfer.src_ciphertext[32:], H, proof.y_2
    ]
    for point in points:
        if not bindings.crypto_core_ed25519_is_valid_point(point):
            raise MalformedProof('statement point is not a valid curve point')

    scalars = [
        proof.sh_1, -c, -1,
        proof.rh_2, -c, -1,
        c, -c, proof.sh_1, -proof.rh_2, -1
    ]
    return Statement(points, [scalar % L for scalar in scalars])


def input_buffer_args(statement: Statement) -> Dict[str, List[str]]:
    return statement.input_args()


def verify_statement(statement: Statement) -> List[bool]:
    results = []
    for first, size in GROUP_LAYOUT:
        acc = IDENTITY
        for i in range(first, first + size):
            acc = point_add(acc, point_mul(statement.scalars[i], statement.points[i]))
        results.append(acc == IDENTITY)
    return results


def verify_transfer(transfer: TransferData) -> bool:
    return all(verify_statement(build_statement(transfer)))

# ---- Proof program ---------------------------------------------------------------

def build_dsl() -> bytes:
    ops = []
    for point in range(STATEMENT_POINTS):
        ops.append(bytes([OP_DECOMPRESS, point, 0, 0, 0]))
        for k in range(2, 9):
            ops.append(bytes([OP_TABLE, point, k, 0, 0]))
    for scalar in range(STATEMENT_POINTS):
        ops.append(bytes([OP_COPY_SCALAR, scalar, 0, 0, 0]))
    for group in range(PROOF_GROUPS):
        ops.append(bytes([OP_IDENTITY, group, 0, 0, 0]))
    for group, (first, size) in enumerate(GROUP_LAYOUT):
        for window in range(WINDOWS - 1, -1, -1):
            ops.append(bytes([OP_MULTISCALAR, group, first, size, window]))
    return b''.join(ops)


DSL = build_dsl()
DSL_INSTRUCTION_COUNT = len(DSL) // INSTRUCTION_WIDTH


def op_cost(op: bytes) -> int:
    code = op[0]
    if code == OP_DECOMPRESS:
        return 150000
    if code == OP_TABLE:
        return 50000
    if code == OP_COPY_SCALAR:
        return 5000
    if code == OP_IDENTITY:
        return 1000
    if code == OP_MULTISCALAR:
        return 25000 + 19000 * op[3]
    return 0


def instruction_at(program: bytes, index: int) -> bytes:
    return program[index * INSTRUCTION_WIDTH:(index + 1) * INSTRUCTION_WIDTH]


def program_cost(program: bytes, start: int, count: int) -> int:
    return sum(op_cost(instruction_at(program, i)) for i in range(start, start + count))

# ---- Crank plan ------------------------------------------------------------------

@dataclass(frozen=True)
class CrankBatch:
    index: int
    start: int
    count: int
    cost: int


def build_crank_plan(budget: int = DEFAULT_BUDGET,
                     program: bytes = DSL,
                     layout: Sequence[int] = STANDARD_BATCHES,
                     invocations: int = PLAN_INVOCATIONS) -> List[CrankBatch]:
    """
    Fixed 26-call schedule for the equality proof program. Every batch must
    fit the budget; the layout must cover the program exactly.
    """
    total = len(program) // INSTRUCTION_WIDTH
    if sum(layout) != total:
        raise StepCountMismatch('plan covers %d steps, program has %d' % (sum(layout), total))
    if len(layout) != invocations:
        raise StepCountMismatch('plan has %d invocations, expected %d' % (len(layout), invocations))

    plan = []
    start = 0
    for index, count in enumerate(layout):
        cost = program_cost(program, start, count)
        if cost > budget:
            raise BudgetExceeded('batch %d costs %d, budget is %d' % (index, cost, budget))
        plan.append(CrankBatch(index, start, count, cost))
        start += count
    return plan


def pack_crank_plan(budget: int = DEFAULT_BUDGET, program: bytes = DSL) -> List[CrankBatch]:
    """
    Greedy schedule for budgets other than the default: as many instructions
    per call as the budget allows.
    """
    total = len(program) // INSTRUCTION_WIDTH
    plan = []
    start = 0
    while start < total:
        count = 0
        cost = 0
        while start + count < total:
            step = op_cost(instruction_at(program, start + count))
            if cost + step > budget:
                break
            cost += step
            count += 1
        if count == 0:
            raise BudgetExceeded('instruction %d alone exceeds budget %d' % (start, budget))
        plan.append(CrankBatch(len(plan), start, count, cost))
        start += count
    logger.debug('packed %d instructions into %d cranks at budget %d', total, len(plan), budget)
    return plan


def crank_calls(plan: Sequence[CrankBatch],
                compute_buffer: str,
                instruction_buffer: str,
                input_buffer: str,
                budget: int = DEFAULT_BUDGET) -> List[dict]:
    """
    Returns args for each con_curve_crank.crank_compute() call, in order.
    """
    return [
        {
            'compute_buffer': compute_buffer,
            'instruction_buffer': instruction_buffer,
            'input_buffer': input_buffer,
            'start': batch.start,
            'count': batch.count,
            'budget': budget
        }
        for batch in plan
    ]

# ---- Buffers ---------------------------------------------------------------------

def instruction_buffer_size(program: bytes = DSL) -> int:
    return HEADER_SIZE + len(program)


def input_buffer_size(point_count: int = STATEMENT_POINTS) -> int:
    return HEADER_SIZE + point_count * 32 * 2 + 128


def compute_buffer_size(point_count: int = STATEMENT_POINTS,
                        scalar_count: int = STATEMENT_POINTS) -> int:
    return (HEADER_SIZE
            + PROOF_GROUPS * 32 * 4
            + 32 * DECOMPRESSION_SPACE
            + 32 * scalar_count
            + TABLE_SIZE * point_count)


def instruction_buffer_writes(program: bytes = DSL, chunk: int = INSTRUCTION_CHUNK) -> List[dict]:
    """
    Returns args for each con_curve_crank.write_bytes() call:
        (buffer_id, offset, data, done)
    The last chunk finalizes the buffer.
    """
    writes = []
    for idx in range(0, len(program), chunk):
        part = program[idx:idx + chunk]
        writes.append({
            'offset': HEADER_SIZE + idx,
            'data': part.hex(),
            'done': idx + chunk >= len(program)
        })
    return writes


def transfer_chunk_slow_setup(transfer: TransferData,
                              instruction_buffer: str,
                              input_buffer: str,
                              compute_buffer: str,
                              budget: int = DEFAULT_BUDGET) -> dict:
    """
    Everything the slow path needs, checked before any buffer is paid for:
      - sizes for the three buffers
      - write_bytes args for the proof program
      - write_input_buffer args for this transfer
      - crank_compute args, in order
    Raises MalformedProof / ScalarCanonicalizationFailure on a bad proof and
    BudgetExceeded when no plan fits the budget.
    """
    statement = build_statement(transfer)
    if budget >= DEFAULT_BUDGET:
        plan = build_crank_plan(budget)
    else:
        plan = pack_crank_plan(budget)

    logger.info('slow transfer setup: %d cranks, compute buffer %d bytes',
                len(plan), compute_buffer_size())

    return {
        'instruction_size': instruction_buffer_size(),
        'input_size': input_buffer_size(len(statement.points)),
        'compute_size': compute_buffer_size(len(statement.points), len(statement.scalars)),
        'instruction_writes': instruction_buffer_writes(),
        'input_args': input_buffer_args(statement),
        'cranks': crank_calls(plan, compute_buffer, instruction_buffer, input_buffer, budget)
    }

# ---- High-level builders -----------------------------------------------------

def build_configure_metadata(keypair: ElGamalKeypair,
                             cipher_key: int,
                             uri: str,
                             method: str = 'freeze',
                             opening: Optional[int] = None) -> dict:
    """
    Returns args for con_stealth.configure_metadata():
        (mint, elgamal_pk, encrypted_cipher_key, uri, method)
    You still supply `mint` when calling the chain method.
    """
    return {
        'elgamal_pk': keypair.pubkey.hex(),
        'encrypted_cipher_key': encrypt(keypair.pubkey, cipher_key, opening).hex(),
        'uri': uri,
        'method': method
    }


def build_transfer_chunk(src_keypair: ElGamalKeypair,
                         stealth_record: dict,
                         dst_pubkey_hex: str,
                         cipher_key: int,
                         opening: Optional[int] = None) -> dict:
    """
    Returns args for con_stealth.transfer_chunk():
        (mint, recipient, transfer)
    `stealth_record` is what con_stealth.get_stealth() returned for the mint.
    """
    if stealth_record['elgamal_pk'] != src_keypair.pubkey.hex():
        raise StealthError('keypair does not match the asset elgamal pubkey')
    transfer = build_transfer_data(src_keypair,
                                   bytes.fromhex(dst_pubkey_hex),
                                   bytes.fromhex(stealth_record['encrypted_cipher_key']),
                                   cipher_key,
                                   opening)
    return {'transfer': transfer.to_dict()}
