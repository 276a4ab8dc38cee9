"""
CURVE25519 CRANK ENGINE

Runs point-arithmetic programs a few instructions per call. Three kinds of
buffer live here, each owned by the account that created it:
  - instruction buffers hold a program (5 byte instructions, hex encoded)
  - input buffers hold the compressed points and scalars a program reads
  - compute buffers hold the intermediate state of one program run, bound to
    one instruction buffer and one input buffer at creation

Each crank executes one batch and advances the compute buffer cursor. Batches
already executed are no-ops, batches past the cursor are rejected.

Points are edwards25519 in extended coordinates [X, Y, Z, T]; they arrive as
32 byte compressed little-endian hex, scalars as 32 byte little-endian hex.
"""

import con_currency

# -----------------------------------------------------------------------------
# Parameters & Helpers
# -----------------------------------------------------------------------------

p = 2**255 - 19
L = 2**252 + 27742317777372353535851937790883648493
U64_MAX = 2**64 - 1

HEX_DIGITS = '0123456789abcdef'

INSTRUCTION_BUFFER = 'instruction_buffer_v1'
INPUT_BUFFER = 'input_buffer_v1'
COMPUTE_BUFFER = 'compute_buffer_v1'
CLOSED_BUFFER = 'closed'

HEADER_SIZE = 128
INSTRUCTION_WIDTH = 5
TABLE_SIZE = 8 * 4 * 32
TABLE_ENTRIES = 8
WINDOWS = 64
PROOF_GROUPS = 3
DECOMPRESSION_SPACE = 12
MAX_BUFFER_SIZE = 1048576

OP_DECOMPRESS = 1
OP_TABLE = 2
OP_COPY_SCALAR = 3
OP_IDENTITY = 4
OP_MULTISCALAR = 5

def mod_exp(base: int, exponent: int, modulus: int):
    if exponent == 0:
        return 1
    result = 1
    base = base % modulus
    while exponent > 0:
        if exponent % 2 == 1:
            result = (result * base) % modulus
        exponent = exponent >> 1
        base = (base * base) % modulus
    return result

def mod_inverse(x: int, modulus: int):
    return mod_exp(x, modulus - 2, modulus)

D = (-121665 * mod_inverse(121666, p)) % p
D2 = (2 * D) % p
SQRT_M1 = mod_exp(2, (p - 1) // 4, p)

def checked_mul(a: int, b: int):
    result = a * b
    assert result <= U64_MAX, 'Overflow: deposit exceeds u64'
    return result

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

# -----------------------------------------------------------------------------
# Point arithmetic (a = -1 twisted Edwards, unified addition)
# -----------------------------------------------------------------------------

def identity_point():
    return [0, 1, 1, 0]

def point_add(a: list, b: list):
    pa = (a[1] - a[0]) * (b[1] - b[0]) % p
    pb = (a[1] + a[0]) * (b[1] + b[0]) % p
    pc = a[3] * D2 % p * b[3] % p
    pd = 2 * a[2] * b[2] % p
    e = pb - pa
    f = pd - pc
    g = pd + pc
    h = pb + pa
    return [e * f % p, g * h % p, f * g % p, e * h % p]

def point_double(a: list):
    return point_add(a, a)

def point_negate(a: list):
    return [(p - a[0]) % p, a[1], a[2], (p - a[3]) % p]

def is_identity(a: list):
    return a[0] % p == 0 and (a[1] - a[2]) % p == 0

def decompress(encoded: str):
    if not is_hex(encoded, 64):
        return None
    y = hex_to_int_le(encoded)
    sign = y >> 255
    y = y & (2**255 - 1)
    if y >= p:
        return None
    x2 = (y * y - 1) * mod_inverse((D * y * y + 1) % p, p) % p
    if x2 == 0:
        if sign == 1:
            return None
        return [0, y, 1, 0]
    x = mod_exp(x2, (p + 3) // 8, p)
    if (x * x - x2) % p != 0:
        x = x * SQRT_M1 % p
    if (x * x - x2) % p != 0:
        return None
    if (x & 1) != sign:
        x = p - x
    return [x, y, 1, x * y % p]

def compress(a: list):
    z_inv = mod_inverse(a[2], p)
    x = a[0] * z_inv % p
    y = a[1] * z_inv % p
    return int_to_hex_le(y | ((x & 1) << 255), 32)

def in_prime_subgroup(a: list):
    # L * a is the identity only without a small-order component
    acc = identity_point()
    base = a
    k = L
    while k > 0:
        if k & 1 == 1:
            acc = point_add(acc, base)
        base = point_double(base)
        k = k >> 1
    return is_identity(acc)

def derive_pedersen_base():
    # try-and-increment, then clear the cofactor
    counter = 0
    while True:
        y = int(hashlib.sha3('stealth|pedersen-h|' + str(counter)), 16) % p
        candidate = decompress(int_to_hex_le(y, 32))
        if candidate is not None:
            point = point_double(point_double(point_double(candidate)))
            if not is_identity(point):
                return compress(point)
        counter += 1

PEDERSEN_H = derive_pedersen_base()

def radix16(scalar: int):
    # signed digits in [-8, 8], least significant first
    digits = []
    for i in range(WINDOWS):
        digits.append((scalar >> (4 * i)) & 15)
    for i in range(WINDOWS - 1):
        carry = (digits[i] + 8) >> 4
        digits[i] -= carry << 4
        digits[i + 1] += carry
    return digits

def select(table: list, digit: int):
    if digit == 0:
        return identity_point()
    if digit > 0:
        return table[digit - 1]
    return point_negate(table[-digit - 1])

# -----------------------------------------------------------------------------
# Program execution
# -----------------------------------------------------------------------------

def op_cost(op: list):
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

def decode_instruction(program: str, index: int):
    start = index * INSTRUCTION_WIDTH * 2
    op = []
    for i in range(INSTRUCTION_WIDTH):
        op.append(int(program[start + 2 * i:start + 2 * i + 2], 16))
    return op

def new_compute_state(point_count: int, scalar_count: int):
    return {
        'points': [None] * point_count,
        'tables': [None] * point_count,
        'scalars': [None] * scalar_count,
        'results': [None] * PROOF_GROUPS
    }

def execute_op(state: dict, points: list, scalars: list, op: list):
    code = op[0]
    a = op[1]

    if code == OP_DECOMPRESS:
        assert a < len(points), 'InvalidBuffer: point index out of bounds'
        point = decompress(points[a])
        assert point is not None, 'MalformedProof: input point does not decompress'
        assert in_prime_subgroup(point), 'MalformedProof: input point has a small-order component'
        state['points'][a] = point
        state['tables'][a] = [point]

    elif code == OP_TABLE:
        assert a < len(points), 'InvalidBuffer: point index out of bounds'
        table = state['tables'][a]
        assert table is not None and len(table) == op[2] - 1, 'OutOfOrder: lookup table step'
        table.append(point_add(table[len(table) - 1], table[0]))

    elif code == OP_COPY_SCALAR:
        assert a < len(scalars), 'InvalidBuffer: scalar index out of bounds'
        scalar = hex_to_int_le(scalars[a])
        assert scalar < L, 'ScalarCanonicalizationFailure: scalar is not reduced'
        state['scalars'][a] = radix16(scalar)

    elif code == OP_IDENTITY:
        assert a < PROOF_GROUPS, 'InvalidBuffer: group index out of bounds'
        state['results'][a] = identity_point()

    elif code == OP_MULTISCALAR:
        assert a < PROOF_GROUPS, 'InvalidBuffer: group index out of bounds'
        assert op[2] + op[3] <= len(points), 'InvalidBuffer: point index out of bounds'
        assert op[4] < WINDOWS, 'InvalidBuffer: window out of bounds'
        acc = state['results'][a]
        assert acc is not None, 'OutOfOrder: accumulator not initialized'
        acc = point_double(point_double(point_double(point_double(acc))))
        for i in range(op[2], op[2] + op[3]):
            table = state['tables'][i]
            digits = state['scalars'][i]
            assert table is not None and len(table) == TABLE_ENTRIES, 'OutOfOrder: lookup table incomplete'
            assert digits is not None, 'OutOfOrder: scalar not copied'
            acc = point_add(acc, select(table, digits[op[4]]))
        state['results'][a] = acc

    else:
        assert False, 'InvalidBuffer: unknown opcode'

def result_flags(state: dict):
    flags = []
    for acc in state['results']:
        flags.append(acc is not None and is_identity(acc))
    return flags

def required_compute_bytes(point_count: int, scalar_count: int):
    return (HEADER_SIZE
            + PROOF_GROUPS * 32 * 4
            + 32 * DECOMPRESSION_SPACE
            + 32 * scalar_count
            + TABLE_SIZE * point_count)

def required_input_bytes(point_count: int):
    return HEADER_SIZE + point_count * 32 * 2 + 128

# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

# buffer_id -> kind-tagged record, see initialize_buffer
buffers = Hash()

# operator, max_budget, byte_rate
config = Hash()

next_event_id = Variable()

BufferInitializedEvent = LogEvent('BufferInitialized', {
    'buffer_id': {'type': str, 'idx': True},
    'owner': {'type': str, 'idx': True},
    'kind': {'type': str},
    'size': {'type': int},
    'event_id': {'type': int, 'idx': True}
})

BufferClosedEvent = LogEvent('BufferClosed', {
    'buffer_id': {'type': str, 'idx': True},
    'owner': {'type': str, 'idx': True},
    'refund': {'type': int},
    'event_id': {'type': int, 'idx': True}
})

CrankedEvent = LogEvent('Cranked', {
    'compute_buffer': {'type': str, 'idx': True},
    'cursor': {'type': int},
    'total': {'type': int},
    'event_id': {'type': int, 'idx': True}
})

# -----------------------------------------------------------------------------
# Construction
# -----------------------------------------------------------------------------

@construct
def seed():
    config['operator'] = ctx.caller
    config['max_budget'] = 1400000
    config['byte_rate'] = 1
    next_event_id.set(1)

# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------

@export
def get_config():
    return {
        'operator': config['operator'],
        'max_budget': config['max_budget'],
        'byte_rate': config['byte_rate']
    }

@export
def change_config(key: str, value: Any):
    assert ctx.caller == config['operator'], 'Unauthorized: only operator can set config'
    config[key] = value

@export
def get_buffer(buffer_id: str):
    return buffers[buffer_id]

@export
def get_compute_status(buffer_id: str):
    record = load_buffer(buffer_id, COMPUTE_BUFFER)
    return {
        'owner': record['owner'],
        'instruction_buffer': record['instruction_buffer'],
        'input_buffer': record['input_buffer'],
        'cursor': record['cursor'],
        'total': record['total'],
        'done': record['done'],
        'results': result_flags(record)
    }

@export
def pedersen_base():
    return PEDERSEN_H

@export
def required_compute_size(point_count: int, scalar_count: int):
    return required_compute_bytes(point_count, scalar_count)

@export
def required_input_size(point_count: int):
    return required_input_bytes(point_count)

# -----------------------------------------------------------------------------
# Buffer lifecycle
# -----------------------------------------------------------------------------

def next_event():
    eid = next_event_id.get()
    next_event_id.set(eid + 1)
    return eid

def load_buffer(buffer_id: str, kind: str):
    record = buffers[buffer_id]
    assert record is not None, 'InvalidBuffer: unknown buffer ' + buffer_id
    assert record['kind'] == kind, 'InvalidBuffer: ' + buffer_id + ' is not a ' + kind
    return record

def load_owned(buffer_id: str, kind: str):
    record = load_buffer(buffer_id, kind)
    assert record['owner'] == ctx.caller, 'Unauthorized: buffer belongs to another account'
    return record

@export
def initialize_buffer(buffer_id: str, kind: str, size: int, refs: list):
    # ids are never reused, closed buffers keep a tombstone
    assert buffers[buffer_id] is None, 'InvalidBuffer: buffer id already used'
    assert size > HEADER_SIZE and size <= MAX_BUFFER_SIZE, 'InvalidBuffer: size out of range'

    record = {'owner': ctx.caller, 'kind': kind, 'size': size}

    if kind == INSTRUCTION_BUFFER:
        assert len(refs) == 0, 'BufferMismatch: instruction buffers take no references'
        assert (size - HEADER_SIZE) % INSTRUCTION_WIDTH == 0, 'InvalidBuffer: program size must be whole instructions'
        record['data'] = '00' * (size - HEADER_SIZE)
        record['finalized'] = False

    elif kind == INPUT_BUFFER:
        assert len(refs) == 0, 'BufferMismatch: input buffers take no references'
        record['points'] = []
        record['scalars'] = []

    elif kind == COMPUTE_BUFFER:
        assert len(refs) == 2, 'BufferMismatch: compute buffers reference an instruction and an input buffer'
        program = load_buffer(refs[0], INSTRUCTION_BUFFER)
        source = load_buffer(refs[1], INPUT_BUFFER)
        assert program['finalized'], 'NotReady: instruction buffer is not finalized'
        assert source['owner'] == ctx.caller, 'Unauthorized: input buffer belongs to another account'
        assert len(source['points']) > 0, 'NotReady: input buffer is empty'
        required = required_compute_bytes(len(source['points']), len(source['scalars']))
        assert size >= required, 'InvalidBuffer: compute buffer needs ' + str(required) + ' bytes'

        state = new_compute_state(len(source['points']), len(source['scalars']))
        record['instruction_buffer'] = refs[0]
        record['input_buffer'] = refs[1]
        record['points'] = state['points']
        record['tables'] = state['tables']
        record['scalars'] = state['scalars']
        record['results'] = state['results']
        record['cursor'] = 0
        record['total'] = len(program['data']) // (2 * INSTRUCTION_WIDTH)
        record['done'] = False

    else:
        assert False, 'InvalidBuffer: unknown buffer kind ' + kind

    deposit = checked_mul(size, config['byte_rate'])
    if deposit > 0:
        con_currency.transfer_from(amount=deposit, to=ctx.this, main_account=ctx.caller)
    record['deposit'] = deposit

    buffers[buffer_id] = record

    BufferInitializedEvent({
        'buffer_id': buffer_id,
        'owner': ctx.caller,
        'kind': kind,
        'size': size,
        'event_id': next_event()
    })

@export
def write_bytes(buffer_id: str, offset: int, data: str, done: bool):
    record = load_owned(buffer_id, INSTRUCTION_BUFFER)
    assert not record['finalized'], 'InvalidState: instruction buffer is finalized'
    assert len(data) % 2 == 0 and is_hex(data, len(data)), 'InvalidBuffer: data must be lower-case hex'
    assert offset >= HEADER_SIZE and offset + len(data) // 2 <= record['size'], 'InvalidBuffer: write out of bounds'

    begin = (offset - HEADER_SIZE) * 2
    record['data'] = record['data'][:begin] + data + record['data'][begin + len(data):]
    if done:
        record['finalized'] = True

    buffers[buffer_id] = record

@export
def write_input_buffer(buffer_id: str, points: list, scalars: list):
    record = load_owned(buffer_id, INPUT_BUFFER)
    assert len(record['points']) == 0, 'InvalidState: input buffer already written'
    assert len(points) > 0 and len(points) == len(scalars), 'MalformedProof: points and scalars must pair up'
    assert len(points) < 256, 'InvalidBuffer: too many points'
    assert required_input_bytes(len(points)) <= record['size'], 'InvalidBuffer: input buffer too small'

    for point in points:
        assert is_hex(point, 64), 'MalformedProof: points must be 32 byte hex'
    for scalar in scalars:
        assert is_hex(scalar, 64), 'MalformedProof: scalars must be 32 byte hex'
        assert hex_to_int_le(scalar) < L, 'ScalarCanonicalizationFailure: scalar is not reduced'

    record['points'] = points
    record['scalars'] = scalars
    buffers[buffer_id] = record

@export
def close_buffer(buffer_id: str):
    record = buffers[buffer_id]
    assert record is not None and record['kind'] != CLOSED_BUFFER, 'InvalidBuffer: unknown buffer ' + buffer_id
    assert record['owner'] == ctx.caller, 'Unauthorized: buffer belongs to another account'

    buffers[buffer_id] = {'owner': record['owner'], 'kind': CLOSED_BUFFER}
    if record['deposit'] > 0:
        con_currency.transfer(amount=record['deposit'], to=record['owner'])

    BufferClosedEvent({
        'buffer_id': buffer_id,
        'owner': record['owner'],
        'refund': record['deposit'],
        'event_id': next_event()
    })

# -----------------------------------------------------------------------------
# Cranking
# -----------------------------------------------------------------------------

@export
def crank_compute(compute_buffer: str, instruction_buffer: str, input_buffer: str,
                  start: int, count: int, budget: int):
    record = load_owned(compute_buffer, COMPUTE_BUFFER)
    assert record['instruction_buffer'] == instruction_buffer, 'BufferMismatch: compute buffer was created with another instruction buffer'
    assert record['input_buffer'] == input_buffer, 'BufferMismatch: compute buffer was created with another input buffer'
    assert start >= 0 and count > 0, 'OutOfOrder: empty batch'

    cursor = record['cursor']
    if start + count <= cursor:
        return cursor

    assert start == cursor, 'OutOfOrder: batch starts at ' + str(start) + ', cursor is at ' + str(cursor)
    assert cursor + count <= record['total'], 'OutOfOrder: batch runs past the end of the program'
    assert budget <= config['max_budget'], 'BudgetExceeded: budget above the per-call ceiling'

    program = load_buffer(instruction_buffer, INSTRUCTION_BUFFER)['data']
    source = load_buffer(input_buffer, INPUT_BUFFER)

    spent = 0
    for index in range(cursor, cursor + count):
        op = decode_instruction(program, index)
        spent += op_cost(op)
        assert spent <= budget, 'BudgetExceeded: batch needs more than the requested budget'
        execute_op(record, source['points'], source['scalars'], op)

    record['cursor'] = cursor + count
    record['done'] = record['cursor'] == record['total']
    buffers[compute_buffer] = record

    CrankedEvent({
        'compute_buffer': compute_buffer,
        'cursor': record['cursor'],
        'total': record['total'],
        'event_id': next_event()
    })

    return record['cursor']

@export
def execute_program(instructions: str, points: list, scalars: list):
    # whole program in one call, no budget
    assert is_hex(instructions, len(instructions)), 'InvalidBuffer: program must be lower-case hex'
    assert len(instructions) % (2 * INSTRUCTION_WIDTH) == 0, 'InvalidBuffer: program size must be whole instructions'
    assert len(points) > 0 and len(points) == len(scalars), 'MalformedProof: points and scalars must pair up'

    state = new_compute_state(len(points), len(scalars))
    for index in range(len(instructions) // (2 * INSTRUCTION_WIDTH)):
        execute_op(state, points, scalars, decode_instruction(instructions, index))
    return result_flags(state)
