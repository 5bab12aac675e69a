import os
import random
import tempfile
import unittest

from chip8 import (
    Chip8, RomError, StackError, Operands, C8_FONTS, MAX_ROM_SIZE,
    ROM_START_ADDRESS, decode, disassemble, split, INSTRUCTIONS,
)


def machine(*opcodes, rng=None, stack_limit=None):
    """a Chip8 with the given 16-bit words loaded at 0x200"""
    chip = Chip8(rng=rng, stack_limit=stack_limit)
    rom = b"".join(op.to_bytes(2, "big") for op in opcodes)
    chip.load(rom)
    return chip


class TestLoading(unittest.TestCase):
    def test_fonts_preloaded(self):
        chip = Chip8()
        self.assertEqual(list(chip.memory[:80]), C8_FONTS)
        self.assertEqual(chip.pc, ROM_START_ADDRESS)

    def test_load_copies_at_0x200(self):
        chip = Chip8()
        self.assertEqual(chip.load(b"\x12\x34\x56"), 3)
        self.assertEqual(chip.memory[0x200:0x203], b"\x12\x34\x56")
        self.assertEqual(chip.memory[0x203], 0)

    def test_load_largest_rom(self):
        chip = Chip8()
        rom = bytes(i & 0xFF for i in range(MAX_ROM_SIZE))
        chip.load(rom)
        self.assertEqual(MAX_ROM_SIZE, 3583)
        self.assertEqual(chip.memory[0x200:0x200+MAX_ROM_SIZE], rom)

    def test_load_empty_rom(self):
        chip = Chip8()
        before = chip.memory
        with self.assertRaises(RomError):
            chip.load(b"")
        self.assertEqual(chip.memory, before)

    def test_load_oversized_rom(self):
        chip = Chip8()
        before = chip.memory
        with self.assertRaises(RomError):
            chip.load(b"\xff" * (MAX_ROM_SIZE + 1))
        self.assertEqual(chip.memory, before)

    def test_load_rejects_non_bytes(self):
        chip = Chip8()
        before = chip.memory
        for rom in (5, None, "\x00\xe0"):
            with self.assertRaises(RomError):
                chip.load(rom)
        self.assertEqual(chip.memory, before)
        self.assertEqual(chip.load(bytearray(b"\x00\xe0")), 2)

    def test_load_rom_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "prog.ch8")
            with open(path, "wb") as f:
                f.write(b"\x00\xe0")
            chip = Chip8()
            self.assertEqual(chip.load_rom(path), 2)
            self.assertEqual(chip.memory[0x200:0x202], b"\x00\xe0")

    def test_load_rom_missing_file(self):
        with self.assertRaises(RomError):
            Chip8().load_rom("/nonexistent/prog.ch8")
        with self.assertRaises(RomError):
            Chip8().load_rom("")

    def test_reset(self):
        # V0 = 5, DT = ST = 5, I = glyph 5, draw it, then call 0x300
        chip = machine(0x6A07, 0x6005, 0xF015, 0xF018, 0xF029, 0xD015, 0x2300)
        chip.state.mem[0x10] = 0xAB
        chip.set_key(3)
        for _ in range(7):
            chip.step()
        self.assertEqual((chip.delay_timer, chip.sound_timer, chip.index), (5, 5, 25))
        self.assertTrue(any(any(row) for row in chip.framebuffer))
        self.assertEqual(chip.stack, (0x20E,))
        chip.reset()
        self.assertEqual(chip.registers, (0,) * 16)
        self.assertEqual(chip.pc, 0x200)
        self.assertEqual(chip.index, 0)
        self.assertEqual((chip.delay_timer, chip.sound_timer), (0, 0))
        self.assertFalse(chip.sound_on)
        self.assertFalse(any(any(row) for row in chip.framebuffer))
        self.assertEqual(chip.stack, ())
        self.assertEqual(chip.keys, (False,) * 16)
        self.assertEqual(chip.memory[0x10], C8_FONTS[0x10])
        self.assertEqual(chip.memory[0x200], 0)


class TestDecoding(unittest.TestCase):
    def test_split(self):
        self.assertEqual(split(0xD125),
                         Operands(opcode=0xD125, group=0xD, nnn=0x125, kk=0x25, n=0x5, x=0x1, y=0x2))

    def test_every_opcode_has_a_handler(self):
        self.assertEqual(len(INSTRUCTIONS), 34)
        self.assertIs(decode(0x8AB4), INSTRUCTIONS[0x8004])
        self.assertIs(decode(0xF365), INSTRUCTIONS[0xF065])
        self.assertIs(decode(0x1ABC), INSTRUCTIONS[0x1000])

    def test_disassemble(self):
        self.assertEqual(disassemble(0x8124), "ADD V1, V2")
        self.assertEqual(disassemble(0xA2F0), "LD I, 0x2f0")
        self.assertEqual(disassemble(0xD015), "DRW V0, V1, 5")

    def test_unknown_opcodes_are_skipped(self):
        for opcode in (0x0123, 0x8AB8, 0xE1FF, 0xF1FF):
            chip = machine(opcode)
            chip.step()
            self.assertEqual(chip.pc, 0x202)
            self.assertEqual(chip.registers, (0,) * 16)

    def test_step_advances_pc(self):
        chip = machine(0x6001, 0x6102)
        self.assertEqual(chip.step(), 0x6001)
        self.assertEqual(chip.pc, 0x202)
        chip.step()
        self.assertEqual(chip.pc, 0x204)


class TestControlFlow(unittest.TestCase):
    def test_jump(self):
        chip = machine(0x1ABC)
        chip.step()
        self.assertEqual(chip.pc, 0xABC)

    def test_call_and_return(self):
        chip = machine(0x2206, 0x0000, 0x0000, 0x00EE)
        chip.step()
        self.assertEqual(chip.pc, 0x206)
        self.assertEqual(chip.stack, (0x202,))
        chip.step()
        self.assertEqual(chip.pc, 0x202)
        self.assertEqual(chip.stack, ())

    def test_return_with_empty_stack(self):
        chip = machine(0x00EE)
        with self.assertRaises(StackError):
            chip.step()

    def test_stack_limit(self):
        chip = machine(0x2200, stack_limit=4)
        for _ in range(4):
            chip.step()
        with self.assertRaises(StackError):
            chip.step()

    def test_jump_plus(self):
        chip = machine(0x6010, 0xB300)
        chip.step()
        chip.step()
        self.assertEqual(chip.pc, 0x310)

    def test_skip_if_eq(self):
        chip = machine(0x6A05, 0x3A05)
        chip.step()
        chip.step()
        self.assertEqual(chip.pc, 0x206)
        chip = machine(0x6A05, 0x3A06)
        chip.step()
        chip.step()
        self.assertEqual(chip.pc, 0x204)

    def test_skip_if_not_eq(self):
        chip = machine(0x4A06)
        chip.step()
        self.assertEqual(chip.pc, 0x204)

    def test_skip_regs(self):
        chip = machine(0x6103, 0x6203, 0x5120, 0x0000, 0x9120)
        for _ in range(4):
            chip.step()
        self.assertEqual(chip.pc, 0x20A)


class TestArithmetic(unittest.TestCase):
    def run_regs(self, opcode, vx, vy):
        chip = machine(0x6000 | vx, 0x6100 | vy, opcode)
        for _ in range(3):
            chip.step()
        return chip.registers

    def test_add_immediate_wraps(self):
        chip = machine(0x6AFF, 0x7A02)
        chip.step()
        chip.step()
        self.assertEqual(chip.registers[0xA], 0x01)
        self.assertEqual(chip.registers[0xF], 0)

    def test_add_with_carry(self):
        v = self.run_regs(0x8014, 0xFF, 0x01)
        self.assertEqual((v[0], v[0xF]), (0x00, 1))
        v = self.run_regs(0x8014, 0x01, 0x01)
        self.assertEqual((v[0], v[0xF]), (0x02, 0))

    def test_sub(self):
        v = self.run_regs(0x8015, 0x01, 0x02)
        self.assertEqual((v[0], v[0xF]), (0xFF, 0))
        v = self.run_regs(0x8015, 0x05, 0x02)
        self.assertEqual((v[0], v[0xF]), (0x03, 1))

    def test_subn(self):
        v = self.run_regs(0x8017, 0x02, 0x01)
        self.assertEqual((v[0], v[0xF]), (0xFF, 0))
        v = self.run_regs(0x8017, 0x02, 0x05)
        self.assertEqual((v[0], v[0xF]), (0x03, 1))

    def test_shifts(self):
        v = self.run_regs(0x8016, 0x05, 0x00)
        self.assertEqual((v[0], v[0xF]), (0x02, 1))
        v = self.run_regs(0x801E, 0x81, 0x00)
        self.assertEqual((v[0], v[0xF]), (0x02, 1))
        v = self.run_regs(0x801E, 0x41, 0x00)
        self.assertEqual((v[0], v[0xF]), (0x82, 0))

    def test_bitwise_leave_flag_alone(self):
        chip = machine(0x6F07, 0x600C, 0x610A, 0x8011, 0x6203, 0x8212, 0x6306, 0x8313, 0x8400)
        for _ in range(9):
            chip.step()
        v = chip.registers
        self.assertEqual((v[0], v[2], v[3], v[4]), (0x0E, 0x02, 0x0C, 0x0E))
        self.assertEqual(v[0xF], 7)

    def test_flag_wins_when_x_is_f(self):
        v = self.run_regs(0x8F04, 0, 0)   # VF = VF + V0
        self.assertEqual(v[0xF], 0)
        chip = machine(0x6FFF, 0x6001, 0x8F04)
        for _ in range(3):
            chip.step()
        self.assertEqual(chip.registers[0xF], 1)

    def test_random_and(self):
        chip = machine(0xC30F, rng=random.Random(42))
        chip.step()
        expected = random.Random(42).randint(0, 255) & 0x0F
        self.assertEqual(chip.registers[3], expected)


class TestMemoryOps(unittest.TestCase):
    def test_set_and_add_index(self):
        chip = machine(0xA300, 0x6510, 0xF51E)
        for _ in range(3):
            chip.step()
        self.assertEqual(chip.index, 0x310)

    def test_select_char(self):
        chip = machine(0x620A, 0xF229)
        chip.step()
        chip.step()
        self.assertEqual(chip.index, 50)
        self.assertEqual(chip.memory[chip.index], 0xF0)

    def test_bcd(self):
        chip = machine(0x649D, 0xA400, 0xF433)   # V4 = 157
        for _ in range(3):
            chip.step()
        self.assertEqual(chip.memory[0x400:0x403], bytes([1, 5, 7]))

    def test_store_and_load_registers(self):
        chip = machine(0x6011, 0x6122, 0x6233, 0xA400, 0xF255, 0x6000, 0x6100, 0xA400, 0xF165)
        for _ in range(5):
            chip.step()
        self.assertEqual(chip.memory[0x400:0x404], bytes([0x11, 0x22, 0x33, 0x00]))
        self.assertEqual(chip.index, 0x403)
        for _ in range(4):
            chip.step()
        self.assertEqual(chip.registers[:3], (0x11, 0x22, 0x33))
        self.assertEqual(chip.index, 0x402)

    def test_addresses_wrap(self):
        chip = machine(0x6007, 0xAFFF, 0xF033)
        for _ in range(3):
            chip.step()
        self.assertEqual(chip.memory[0xFFF], 0)
        self.assertEqual(chip.memory[0x000], 0)
        self.assertEqual(chip.memory[0x001], 7)


class TestTimersAndKeys(unittest.TestCase):
    def test_timers(self):
        chip = machine(0x6002, 0xF015, 0xF018, 0xF107)
        for _ in range(3):
            chip.step()
        self.assertTrue(chip.sound_on)
        chip.decrement_timers()
        chip.decrement_timers()
        chip.decrement_timers()
        self.assertEqual((chip.delay_timer, chip.sound_timer), (0, 0))
        self.assertFalse(chip.sound_on)
        chip.step()
        self.assertEqual(chip.registers[1], 0)

    def test_keys(self):
        chip = Chip8()
        chip.set_key(0xA)
        chip.set_key(0xA)
        self.assertTrue(chip.keys[0xA])
        chip.clear_key(0xA)
        self.assertFalse(chip.keys[0xA])
        with self.assertRaises(ValueError):
            chip.set_key(16)

    def test_skip_if_pressed(self):
        chip = machine(0x6505, 0xE59E, 0x0000, 0xE5A1)
        chip.set_key(5)
        chip.step()
        chip.step()
        self.assertEqual(chip.pc, 0x206)
        chip.step()
        self.assertEqual(chip.pc, 0x208)

    def test_wait_keypress(self):
        chip = machine(0xF30A)
        for _ in range(5):
            chip.step()
            self.assertEqual(chip.pc, 0x200)
        self.assertEqual(chip.registers, (0,) * 16)
        chip.set_key(0xC)
        chip.set_key(0x9)
        chip.step()
        self.assertEqual(chip.registers[3], 0x9)
        self.assertEqual(chip.pc, 0x202)


class TestDisplay(unittest.TestCase):
    def test_draw_twice_collides(self):
        # VF starts at 1 so the first draw has to clear it; sprite byte 0x80 at 0x20C
        chip = machine(0x6F01, 0xA20C, 0x6005, 0x6103, 0xD011, 0xD011, 0x8000)
        for _ in range(4):
            chip.step()
        self.assertEqual(chip.registers[0xF], 1)
        chip.step()
        self.assertTrue(chip.framebuffer[3][5])
        self.assertTrue(chip.state.screen.read_pixel(5, 3))
        self.assertEqual(chip.registers[0xF], 0)
        chip.step()
        self.assertFalse(chip.framebuffer[3][5])
        self.assertEqual(chip.registers[0xF], 1)

    def test_sprite_wraps(self):
        chip = machine(0x603E, 0x611F, 0xF229, 0xD012)   # glyph 0 rows F0 90 at (62, 31)
        for _ in range(4):
            chip.step()
        fb = chip.framebuffer
        self.assertTrue(fb[31][62] and fb[31][63] and fb[31][0] and fb[31][1])
        self.assertTrue(fb[0][62] and fb[0][1])
        self.assertFalse(fb[0][63] or fb[0][0])

    def test_clear_screen(self):
        chip = machine(0xD015, 0x00E0)
        chip.step()
        self.assertTrue(any(any(row) for row in chip.framebuffer))
        chip.step()
        self.assertFalse(any(any(row) for row in chip.framebuffer))


class TestDiagnostics(unittest.TestCase):
    def test_dumps(self):
        chip = machine(0x00E0)
        self.assertEqual(chip.dump_memory(4, 0x200), "0200: 00 e0 00 00")
        self.assertTrue(chip.dump_registers().startswith("V = 00"))
        self.assertIn("PC_REGISTER:0x200", str(chip))

    def test_save_memory(self):
        chip = machine(0x00E0)
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "mem.bin")
            chip.save_memory(path)
            with open(path, "rb") as f:
                self.assertEqual(f.read(), chip.memory)


if __name__ == "__main__":
    unittest.main()
