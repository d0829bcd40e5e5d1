# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# The interpreter core: memory, processor state, framebuffer and the
# fetch/decode/execute cycle. Nothing in here touches pygame, the host
# side lives in emulator.py.


import logging
import random
import threading
from functools import wraps


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
REGISTER_COUNT = 16
STACK_SIZE = 16
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32


class UnknownOpcodeError(Exception):
    """the fetched opcode matches no instruction, the cycle cannot go on"""

    def __init__(self, opcode, address):
        self.opcode = opcode
        self.address = address
        super().__init__(f"Unknown opcode: 0x{opcode:04X} at 0x{address:03X}")


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].addr     # args[0] equals self of the decorated method
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the message
            if log.isEnabledFor(logging.DEBUG):
                vals['mem_addr'] = mem_addr
                log.debug(msg.format(**vals))
        return wrapper_fn
    return decorator

def render_text(rows):
    """draw a frame as text, X for pixels that are ON, blank for the ones that are OFF"""
    width = len(rows[0]) if rows else 0
    border = "+" + "-" * width + "+"
    lines = [border]
    for row in rows:
        lines.append("|" + "".join("X" if pixel else " " for pixel in row) + "|")
    lines.append(border)
    return "\n".join(lines) + "\n"


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = []
        self.size = 0       # doubles as the stack pointer

    def __repr__(self):
        return f"Stack(sp={self.size}, {[hex(a) for a in self.addr_list]})"

    def append(self, address):
        if self.size >= STACK_SIZE:
            raise IndexError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list.append(address)
        self.size += 1

    def pop(self):
        if self.size == 0:
            raise IndexError("Return with an empty CHIP-8 stack")
        self.size -= 1
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self, size=MEMORY_SIZE):
        self.inner = bytearray(size)

    def __len__(self):
        return len(self.inner)

    def _check(self, index):
        # negative indexes would silently wrap around on a bytearray
        if not 0 <= index < len(self.inner):
            raise IndexError(f"Memory address 0x{index:04x} is outside the {len(self.inner)} bytes of RAM")

    def __setitem__(self, index, value):
        self._check(index)
        self.inner[index] = value

    def __getitem__(self, index):
        self._check(index)
        return self.inner[index]

    def load(self, program, offset=ROM_START_ADDRESS):
        """copy a program image verbatim starting at offset, everything else is left untouched"""
        program = bytes(program)
        if offset + len(program) > len(self.inner):
            raise ValueError(
                f"A program of {len(program)} bytes does not fit in memory at 0x{offset:03x}"
            )
        self.inner[offset:offset+len(program)] = program


# ******************** CPU STATE SECTION
class Registers:
    """processor state: V0-VF, the index register, the program counter and the call stack"""

    def __init__(self):
        self.v = [0] * REGISTER_COUNT   # VF doubles as the flag register
        self.idx = 0
        self.pc = ROM_START_ADDRESS
        self.stack = Stack()

    def __str__(self):
        return (f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | "
                f"VARIABLE_REGISTERS:{self.v}\nSTACK:{self.stack!r}")


# ******************** DISPLAY SECTION
class Framebuffer:
    """64x32 monochrome pixel grid, sprites are XORed onto it"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.pixels = [[False] * w for _ in range(h)]
        self.dirty = False

    def __getitem__(self, pos):
        x, y = pos
        return self.pixels[y][x]

    def rows(self):
        """copy of the grid, one list of booleans per row"""
        return [list(row) for row in self.pixels]

    def clear(self):
        for row in self.pixels:
            row[:] = [False] * self.w
        self.dirty = True

    def clear_dirty(self):
        self.dirty = False

    def toggle(self, x, y, bit):
        """
        XOR a sprite bit into the pixel at (x, y), coordinates wrap around the edges
        return True when the pixel changed state
        """
        x, y = x % self.w, y % self.h
        self.dirty = True
        current = self.pixels[y][x]
        new = current ^ bool(bit)
        if new == current:
            return False
        self.pixels[y][x] = new
        return True

    def render_text(self):
        return render_text(self.pixels)


# ******************** CPU SECTION
class Chip8:
    """instruction interpreter: one call to cycle() runs one fetch/decode/execute"""

    def __init__(self, state, mem, screen, rng=None):
        self.state = state
        self.mem = mem
        self.screen = screen
        self.rng = rng or random.Random()
        self.addr = state.pc    # where the instruction being executed was fetched from
        self.instructions = {
            0x0000: self._call_machine_code,
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
            0x8000: self._set_vx_to_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x800E: self._shl,
            0x9000: self._skip_if_not_eq_regs,
            0xA000: self._set_idx,
            0xB000: self._jump_plus,
            0xC000: self._random_byte_and,
            0xD000: self._to_screen,
            0xF015: self._add_x_to_idx,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    def __str__(self):
        return f"{self.state}\nFLAGS: DIRTY:{self.screen.dirty}"

    @property
    def v_regs(self):
        return self.state.v

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SYS 0x{address:03x}")
    def _call_machine_code(self, opcode):
        """machine code routines are not emulated, nothing to do"""
        address = opcode & 0x0FFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, opcode):
        self.screen.clear()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, opcode):
        """return from a subroutine"""
        self.state.pc = self.state.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, opcode):
        address = opcode & 0x0FFF
        self.state.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, opcode):
        address = opcode & 0x0FFF
        self.state.stack.append(self.state.pc)
        self.state.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, {comparison_value}")
    def _skip_if_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, {comparison_value}")
    def _skip_if_not_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, V{y}")
    def _skip_if_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, {value}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, {value}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, V{y}")
    def _set_vx_to_vy(self, opcode):
        """set the value of Vx equal to that of Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x}, V{y}")
    def _set_vx_and_vy(self, opcode):
        """set the value of Vx to Vx AND Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, opcode):
        """set the value of Vx to Vx XOR Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, V{y}")
    def _add_vx_vy(self, opcode):
        """set the value of Vx to Vx + Vy, the carry is dropped and VF is not touched"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = (self.v_regs[x] + self.v_regs[y]) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x}, V{y}")
    def _sub_vx_vy(self, opcode):
        """set the value of Vx to Vx - Vy, the borrow is dropped and VF is not touched"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x}, V{y}")
    def _shl(self, opcode):
        """VF = most significant bit of Vy, then Vx = Vx SHL 1"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        MSB = (self.v_regs[y] & 0x80) >> 7
        self.v_regs[0xF] = MSB
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:03x}")
    def _set_idx(self, opcode):
        """set the value of the I register"""
        value = opcode & 0x0FFF
        self.state.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{address:04x}")
    def _jump_plus(self, opcode):
        address = opcode & 0x0FFF
        v0 = self.v_regs[0x0]
        self.state.pc = address + v0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x}, V{y}, {n_bytes}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = 1 if any pixel flipped"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        x_origin, y_origin = self.v_regs[x], self.v_regs[y]
        n_bytes = opcode & 0x000F
        flipped = False
        # step through each sprite byte
        for i in range(n_bytes):
            sprite_byte = format(self.mem[self.state.idx + i], '08b')   # MSB first, padded to a full byte
            for j, bit in enumerate(sprite_byte):
                # the framebuffer wraps the coordinates around both edges
                if self.screen.toggle(x_origin + j, y_origin + i, int(bit)):
                    flipped = True
        self.v_regs[0xF] = 1 if flipped else 0
        self.screen.dirty = True
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, {x}")
    def _add_x_to_idx(self, opcode):
        """no delay timer here: I = I + x, the register number itself"""
        x = (opcode & 0x0F00) >> 8
        self.state.idx = (self.state.idx + x) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{register}")
    def _add_to_idx(self, opcode):
        """set I = I + Vx"""
        register = (opcode & 0x0F00) >> 8
        self.state.idx = (self.state.idx + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{register}")
    def _select_char(self, opcode):
        """move I forward to the glyph for digit Vx"""
        register = (opcode & 0x0F00) >> 8
        self.state.idx = (self.state.idx + self.v_regs[register] * 5) & 0xFFFF   # each glyph is made of 5 bytes
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x}")
    def _store_vregs(self, opcode):
        """store registers V0 up to Vx (excluded) in memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        for i in range(x):
            self.mem[self.state.idx + i] = self.v_regs[i]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 up to Vx (excluded) from memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        for i in range(x):
            self.v_regs[i] = self.mem[self.state.idx + i]
        return locals()

    def _goto_next_instruction(self):
        self.state.pc += 0x2

    def fetch(self):
        """read the big-endian opcode at PC"""
        return self.mem[self.state.pc] << 8 | self.mem[self.state.pc + 1]

    def decode(self, opcode):
        """decode opcodes using masks and return respective function"""
        # WATCH OUT: masks order is important!!!
        # as the for loop breaks out as soon as it finds a match
        masks = {
            0xFFFF: [0x0000, 0x00E0, 0x00EE],
            0xF0FF: [0xF015, 0xF01E, 0xF029, 0xF055, 0xF065],
            0xF00F: [0x5000, 0x8000, 0x8002, 0x8003, 0x8004, 0x8005, 0x800E, 0x9000],
            0xF000: [0x1000, 0x2000, 0x3000, 0x4000, 0x6000, 0x7000, 0xA000, 0xB000, 0xC000, 0xD000],
        }
        for m, ops in masks.items():
            if (opcode & m) in ops:
                return self.instructions[opcode & m]
        raise UnknownOpcodeError(opcode, self.addr)

    def cycle(self):
        # fetch (each instruction is two bytes long)
        self.addr = self.state.pc
        opcode = self.fetch()
        # PC moves on before executing so jumps and skips are not overwritten
        self._goto_next_instruction()
        # decode + execute
        instruction = self.decode(opcode)
        instruction(opcode)


def step(state, memory, framebuffer):
    """run one fetch/decode/execute cycle against the given state, memory and framebuffer"""
    Chip8(state, memory, framebuffer).cycle()


# ******************** MACHINE SECTION
class Machine:
    """
    Owns memory, processor state and framebuffer of one loaded program.

    Every method that reads or writes the combined state goes through
    self.lock, so a renderer polling from another thread never sees a
    frame half way through an instruction.
    """

    def __init__(self, program=b"", rng=None):
        self.mem = Memory()
        self.mem.load(program)
        self.state = Registers()
        self.screen = Framebuffer()
        self.cpu = Chip8(self.state, self.mem, self.screen, rng)
        self.lock = threading.Lock()

    @classmethod
    def from_file(cls, path, rng=None):
        """load ROM file from the given path"""
        with open(path, mode='rb') as f:
            rom = f.read()
        log.info("Loaded ROM %s (%d bytes) at 0x%03x", path, len(rom), ROM_START_ADDRESS)
        return cls(rom, rng=rng)

    def __str__(self):
        return str(self.cpu)

    def step(self):
        with self.lock:
            self.cpu.cycle()

    def needs_redraw(self):
        return self.screen.dirty

    def clear_dirty(self):
        with self.lock:
            self.screen.clear_dirty()

    def take_frame(self):
        """snapshot the framebuffer and clear the dirty flag, None when nothing was drawn since last time"""
        with self.lock:
            if not self.screen.dirty:
                return None
            rows = self.screen.rows()
            self.screen.clear_dirty()
            return rows
