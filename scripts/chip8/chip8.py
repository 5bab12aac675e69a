# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite
#
# This module is the interpreter engine only: no window, no audio, no clock.
# A driver (see chip8_frontend.py) calls step() and decrement_timers() at the
# cadence it likes and reads the framebuffer/sound timer back out.


import os
import random
from collections import namedtuple
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
ADDRESS_MASK = 0xFFF
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = 0xFFF - ROM_START_ADDRESS   # 3583 bytes
FONT_STRIDE = 5                             # each character font is made of 5 bytes
REGISTERS = 16
KEYS = 16
FLAG = 0xF
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the interpreter"""


class RomError(Chip8Error, ValueError):
    """the program image can't be loaded: empty, too large or unreadable"""


class StackError(Chip8Error, IndexError):
    """return with an empty call stack, or call past the configured depth"""


# ******************** UTILITIES SECTION
# fields of a 16-bit instruction word, e.g. 0xD125 -> group=0xD, x=1, y=2, n=5
Operands = namedtuple("Operands", ["opcode", "group", "nnn", "kk", "n", "x", "y"])


def split(opcode):
    """extract every operand field from an instruction word"""
    return Operands(
        opcode=opcode,
        group=(opcode & 0xF000) >> 12,
        nnn=opcode & 0x0FFF,
        kk=opcode & 0x00FF,
        n=opcode & 0x000F,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
    )


def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(state, op):
            mem_addr = (state.pc - 2) & 0xFFFF      # pc already points past the fetched instruction
            if DEBUG: print(msg.format(mem_addr=mem_addr, **op._asdict()))
            return fn(state, op)
        wrapper_fn.mnemonic = msg.split("instruction: ")[-1]
        return wrapper_fn
    return decorator


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = [0] * MEMORY_SIZE
        self.reset()

    def __setitem__(self, key, value):
        self.inner[key & ADDRESS_MASK] = value & 0xFF

    def __getitem__(self, index):
        return self.inner[index & ADDRESS_MASK]

    def reset(self):
        """zero everything, then write the font glyphs back at 0x000"""
        self.inner[:] = [0] * MEMORY_SIZE
        self.inner[0x00:0x00+len(C8_FONTS)] = C8_FONTS

    def load(self, rom):
        """copy a program image at 0x200, raise RomError without touching memory if it doesn't fit"""
        try:
            rom = memoryview(rom).tobytes()
        except TypeError as e:
            raise RomError(f"A program image must be bytes-like, got {type(rom).__name__}") from e
        if not rom:
            raise RomError("Cannot load an empty program")
        if len(rom) > MAX_ROM_SIZE:
            raise RomError(f"Program is too large to be loaded into memory. Size is {len(rom)} bytes, "
                           f"at most {MAX_ROM_SIZE} bytes fit")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = list(rom)
        return len(rom)

    def dump(self, length=0, offset=0):
        """hex dump of `length` bytes starting at `offset`, 16 bytes per line (whole memory by default)"""
        length = length or MEMORY_SIZE - offset
        data = self.inner[offset:offset+length]
        lines = []
        for row in range(0, len(data), 16):
            chunk = " ".join(f"{b:02x}" for b in data[row:row+16])
            lines.append(f"{offset+row:04x}: {chunk}")
        return "\n".join(lines)


# ********** WRAPS A LIST TO REPRESENT THE CALL STACK
class Stack:
    def __init__(self, limit=None):
        self.addr_list = []
        self.limit = limit      # None means unbounded

    def __str__(self):
        return "[" + ", ".join(f"0x{a:03x}" for a in self.addr_list) + "]"

    def append(self, address):
        if self.limit is not None and len(self.addr_list) >= self.limit:
            raise StackError(f"The CHIP-8 stack can contain at most {self.limit} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise StackError("Return from subroutine with an empty call stack")
        return self.addr_list.pop()

    def clear(self):
        self.addr_list.clear()

    def snapshot(self):
        return tuple(self.addr_list)


# ******************** I/O SECTION
class Keypad:
    """state of the 16 hex keys, fed by whatever maps physical input to 0x0-0xF"""
    def __init__(self):
        self.pressed_keys = [False] * KEYS

    def __getitem__(self, key):
        return self.pressed_keys[key & 0xF]

    def __setitem__(self, key, value):
        if not 0 <= key < KEYS:
            raise ValueError(f"Key index must be in 0x0-0xF, got {key!r}")
        self.pressed_keys[key] = bool(value)

    def first(self):
        """lowest index of the keys currently pressed, None if no key is down"""
        for key, pressed in enumerate(self.pressed_keys):
            if pressed:
                return key
        return None

    def clear(self):
        self.pressed_keys[:] = [False] * KEYS

    def snapshot(self):
        return tuple(self.pressed_keys)


class Framebuffer:
    """64x32 monochrome screen, row-major, where sprites are XORed in"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w

    def read_pixel(self, x, y):
        return self.buffer[y * self.w + x]

    def toggle_pixel(self, x, y):
        """flip a pixel, return True if it was ON (i.e. it's been erased)"""
        pos = y * self.w + x
        erased = self.buffer[pos]
        self.buffer[pos] = not erased
        return erased

    def clear(self):
        self.buffer[:] = [False] * self.h * self.w

    def draw_sprite(self, rows, x, y):
        """
        XOR a sprite made of 8-pixel-wide rows at (x, y) and report collisions
        coordinates wrap around both edges, sprites are never clipped
        """
        collision = False
        for i, sprite_byte in enumerate(rows):
            # increment y by one for each new sprite's byte read
            y_coordinate = (y + i) % self.h
            for j in range(8):
                if not sprite_byte & (0x80 >> j):
                    continue
                x_coordinate = (x + j) % self.w
                # the only case when a pixel gets erased is when it was ON and is turned ON again
                if self.toggle_pixel(x_coordinate, y_coordinate):
                    collision = True
        return collision

    def snapshot(self):
        return tuple(tuple(self.buffer[r * self.w:(r + 1) * self.w]) for r in range(self.h))


# ******************** STATE SECTION
class State:
    """every piece of machine state, handed to the instruction handlers"""
    def __init__(self, rng=None, stack_limit=None):
        self.mem = Memory()
        self.stack = Stack(stack_limit)
        self.keypad = Keypad()
        self.screen = Framebuffer()
        self.rng = rng if rng is not None else random.Random()
        self.v_regs = [0] * REGISTERS
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero

    def skip(self):
        self.pc = (self.pc + 0x2) & 0xFFFF


# ******************** INSTRUCTIONS SECTION
@asm("mem_addr: 0x{mem_addr:04x}    instruction: ???? 0x{opcode:04x}")
def _no_op(state, op):
    """unknown instructions are skipped, execution continues with the next one"""


@asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
def _clear_screen(state, op):
    state.screen.clear()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
def _return(state, op):
    """return from a subroutine"""
    state.pc = state.stack.pop()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{nnn:03x}")
def _jump(state, op):
    state.pc = op.nnn


@asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{nnn:03x}")
def _call_addr(state, op):
    state.stack.append(state.pc)
    state.pc = op.nnn


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, 0x{kk:02x}")
def _skip_if_eq(state, op):
    if state.v_regs[op.x] == op.kk:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, 0x{kk:02x}")
def _skip_if_not_eq(state, op):
    if state.v_regs[op.x] != op.kk:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, V{y:X}")
def _skip_if_eq_regs(state, op):
    if state.v_regs[op.x] == state.v_regs[op.y]:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, V{y:X}")
def _skip_if_not_eq_regs(state, op):
    if state.v_regs[op.x] != state.v_regs[op.y]:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, 0x{kk:02x}")
def _set_vx(state, op):
    """set the value of one of the 16 variable registers, Vx"""
    state.v_regs[op.x] = op.kk


@asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, 0x{kk:02x}")
def _add_to_vx(state, op):
    """add to the value already present in Vx, no carry"""
    state.v_regs[op.x] = (state.v_regs[op.x] + op.kk) & 0xFF


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, V{y:X}")
def _set_vx_to_vy(state, op):
    state.v_regs[op.x] = state.v_regs[op.y]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x:X}, V{y:X}")
def _set_vx_or_vy(state, op):
    state.v_regs[op.x] |= state.v_regs[op.y]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x:X}, V{y:X}")
def _set_vx_and_vy(state, op):
    state.v_regs[op.x] &= state.v_regs[op.y]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x:X}, V{y:X}")
def _set_vx_xor_vy(state, op):
    state.v_regs[op.x] ^= state.v_regs[op.y]


# arithmetic below computes from the operands first, then writes Vx, then VF:
# when x is F the flag is what survives

@asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
def _add_vx_vy(state, op):
    """set Vx = Vx + Vy, VF = carry"""
    total = state.v_regs[op.x] + state.v_regs[op.y]
    state.v_regs[op.x] = total & 0xFF     # keep only the lowest 8 bits
    state.v_regs[FLAG] = 1 if total > 0xFF else 0


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x:X}, V{y:X}")
def _sub_vx_vy(state, op):
    """set Vx = Vx - Vy, VF = NOT borrow"""
    vx, vy = state.v_regs[op.x], state.v_regs[op.y]
    state.v_regs[op.x] = (vx - vy) & 0xFF
    state.v_regs[FLAG] = 0 if vy > vx else 1


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x:X}")
def _shr(state, op):
    """set Vx = Vx SHR 1, VF = the bit shifted out"""
    vx = state.v_regs[op.x]
    state.v_regs[op.x] = vx >> 1
    state.v_regs[FLAG] = vx & 0x1


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x:X}, V{y:X}")
def _subn_vx_vy(state, op):
    """set Vx = Vy - Vx, VF = NOT borrow"""
    vx, vy = state.v_regs[op.x], state.v_regs[op.y]
    state.v_regs[op.x] = (vy - vx) & 0xFF
    state.v_regs[FLAG] = 0 if vx > vy else 1


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x:X}")
def _shl(state, op):
    """set Vx = Vx SHL 1, VF = the bit shifted out"""
    vx = state.v_regs[op.x]
    state.v_regs[op.x] = (vx << 1) & 0xFF
    state.v_regs[FLAG] = (vx & 0x80) >> 7


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{nnn:03x}")
def _set_idx(state, op):
    state.idx = op.nnn


@asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{nnn:03x}")
def _jump_plus(state, op):
    state.pc = op.nnn + state.v_regs[0x0]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x:X}, 0x{kk:02x}")
def _random_byte_and(state, op):
    state.v_regs[op.x] = state.rng.randint(0, 255) & op.kk


@asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n}")
def _to_screen(state, op):
    """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
    x, y = state.v_regs[op.x], state.v_regs[op.y]
    rows = [state.mem[state.idx + i] for i in range(op.n)]
    state.v_regs[FLAG] = 0
    if state.screen.draw_sprite(rows, x, y):
        state.v_regs[FLAG] = 1


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x:X}")
def _skip_if_pressed(state, op):
    """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
    if state.keypad[state.v_regs[op.x]]:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x:X}")
def _skip_if_not_pressed(state, op):
    """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
    if not state.keypad[state.v_regs[op.x]]:
        state.skip()


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, DT")
def _set_vx_dt(state, op):
    state.v_regs[op.x] = state.dt


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, K")
def _wait_keypress(state, op):
    """
    wait for a key press and store its value in Vx
    nothing may change before the key check: the whole instruction is
    fetched again on the next step while no key is down
    """
    key = state.keypad.first()
    if key is None:
        state.pc = (state.pc - 0x2) & 0xFFFF    # stay on the same instruction until a key is pressed
    else:
        state.v_regs[op.x] = key


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x:X}")
def _set_dt_vx(state, op):
    state.dt = state.v_regs[op.x]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{x:X}")
def _set_st(state, op):
    state.st = state.v_regs[op.x]


@asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{x:X}")
def _add_to_idx(state, op):
    state.idx = (state.idx + state.v_regs[op.x]) & 0xFFFF


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{x:X}")
def _select_char(state, op):
    """set I to location of sprite for digit Vx"""
    state.idx = state.v_regs[op.x] * FONT_STRIDE


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x:X}")
def _bcd_repr(state, op):
    """hundreds digit of Vx at I, tens digit at I+1, ones digit at I+2"""
    value = state.v_regs[op.x]
    state.mem[state.idx] = value // 100
    state.mem[state.idx + 1] = (value // 10) % 10
    state.mem[state.idx + 2] = value % 10


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x:X}")
def _store_vregs(state, op):
    """store registers V0 through Vx (included) in memory starting at location I"""
    for r in range(op.x + 1):
        state.mem[state.idx + r] = state.v_regs[r]
    state.idx = (state.idx + op.x + 1) & 0xFFFF


@asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, [I]")
def _load_vregs(state, op):
    """read registers V0 through Vx (included) from memory starting at location I"""
    for r in range(op.x + 1):
        state.v_regs[r] = state.mem[state.idx + r]
    state.idx = (state.idx + op.x + 1) & 0xFFFF


# keys are opcodes with their operand bits zeroed by the group mask below
INSTRUCTIONS = {
    0x00E0: _clear_screen,
    0x00EE: _return,
    0x1000: _jump,
    0x2000: _call_addr,
    0x3000: _skip_if_eq,
    0x4000: _skip_if_not_eq,
    0x5000: _skip_if_eq_regs,
    0x6000: _set_vx,
    0x7000: _add_to_vx,
    0x8000: _set_vx_to_vy,
    0x8001: _set_vx_or_vy,
    0x8002: _set_vx_and_vy,
    0x8003: _set_vx_xor_vy,
    0x8004: _add_vx_vy,
    0x8005: _sub_vx_vy,
    0x8006: _shr,
    0x8007: _subn_vx_vy,
    0x800E: _shl,
    0x9000: _skip_if_not_eq_regs,
    0xA000: _set_idx,
    0xB000: _jump_plus,
    0xC000: _random_byte_and,
    0xD000: _to_screen,
    0xE09E: _skip_if_pressed,
    0xE0A1: _skip_if_not_pressed,
    0xF007: _set_vx_dt,
    0xF00A: _wait_keypress,
    0xF015: _set_dt_vx,
    0xF018: _set_st,
    0xF01E: _add_to_idx,
    0xF029: _select_char,
    0xF033: _bcd_repr,
    0xF055: _store_vregs,
    0xF065: _load_vregs,
}

# groups with sub-opcodes keep their selector bits, every other group is keyed by its nibble alone
GROUP_MASKS = {
    0x0: 0xF0FF,
    0x8: 0xF00F,
    0xE: 0xF0FF,
    0xF: 0xF0FF,
}


def decode(opcode):
    """return the handler for an opcode, the no-op handler if it's unknown"""
    mask = GROUP_MASKS.get(opcode >> 12, 0xF000)
    return INSTRUCTIONS.get(opcode & mask, _no_op)


def disassemble(opcode):
    """mnemonic of an opcode, e.g. 0x8124 -> 'ADD V1, V2'"""
    op = split(opcode)
    mnemonic = decode(opcode).mnemonic
    return mnemonic.format(mem_addr=0, **op._asdict())


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None, stack_limit=None):
        self.state = State(rng=rng, stack_limit=stack_limit)
        self.reset()

    def __str__(self):
        s = self.state
        registers = f"PC_REGISTER:0x{s.pc:03x} | IDX_REGISTER:0x{s.idx:03x} | VARIABLE_REGISTERS:{s.v_regs}"
        stack = f"STACK:{s.stack}"
        timers = f"DT:{s.dt} | ST:{s.st}"
        return f"{registers}\n{stack}\n{timers}"

    # ********** LIFECYCLE
    def reset(self):
        s = self.state
        s.mem.reset()
        s.stack.clear()
        s.keypad.clear()
        s.screen.clear()
        s.v_regs[:] = [0] * REGISTERS
        s.pc = ROM_START_ADDRESS
        s.idx = 0
        s.dt = 0
        s.st = 0

    def load(self, rom):
        """copy a raw program image at 0x200; RomError, and memory untouched, if empty or too large"""
        size = self.state.mem.load(rom)
        if DEBUG: print(f"Loaded a {size} bytes program at 0x{ROM_START_ADDRESS:03x}")
        return size

    def load_rom(self, path):
        """load ROM file from user specified path, raise RomError if it can't be read or loaded"""
        if not path:
            raise RomError("Cannot load file, empty path")
        try:
            with open(path, mode='rb') as f:
                rom = f.read()
        except OSError as e:
            raise RomError(f"Failed to load rom file '{path}': {e}") from e
        try:
            size = self.load(rom)
        except RomError as e:
            raise RomError(f"Rom '{path}': {e}") from e
        if DEBUG: print(f"The ROM at path {path} has been loaded successfully")
        return size

    # ********** EXECUTION
    def step(self):
        """fetch, decode and execute exactly one instruction, return its opcode"""
        s = self.state
        # fetch (each instruction is two bytes long)
        opcode = s.mem[s.pc] << 8 | s.mem[s.pc + 1]
        if DEBUG: print(f"opcode: 0x{opcode:04x}", end="    ")
        s.skip()
        # decode + execute
        instruction = decode(opcode)
        instruction(s, split(opcode))
        return opcode

    def decrement_timers(self):
        s = self.state
        if s.dt > 0:
            s.dt -= 1
        if s.st > 0:
            s.st -= 1

    def set_key(self, key):
        self.state.keypad[key] = True

    def clear_key(self, key):
        self.state.keypad[key] = False

    # ********** READ ACCESSORS
    @property
    def registers(self):
        return tuple(self.state.v_regs)

    @property
    def pc(self):
        return self.state.pc

    @property
    def index(self):
        return self.state.idx

    @property
    def stack(self):
        return self.state.stack.snapshot()

    @property
    def delay_timer(self):
        return self.state.dt

    @property
    def sound_timer(self):
        return self.state.st

    @property
    def sound_on(self):
        """the buzzer should sound as long as the sound timer is non-zero"""
        return self.state.st > 0

    @property
    def keys(self):
        return self.state.keypad.snapshot()

    @property
    def memory(self):
        return bytes(self.state.mem.inner)

    @property
    def framebuffer(self):
        """tuple of 32 rows of 64 booleans, True when the pixel is ON"""
        return self.state.screen.snapshot()

    # ********** DIAGNOSTICS
    def dump_memory(self, length=0, offset=0):
        return self.state.mem.dump(length, offset)

    def dump_registers(self):
        return "V = " + " ".join(f"{v:02x}" for v in self.state.v_regs)

    def save_memory(self, path):
        """write the whole memory to a binary file"""
        with open(path, mode='wb') as f:
            f.write(self.memory)
