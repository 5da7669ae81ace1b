"""
Instruction format tests: field layout per opcode, encode/decode inversion,
word-stream codec and disassembly.
"""

import unittest

import pytest

from isa import (decode, encode, build, disassemble, split_word, compose_word,
                 words_to_bytes, bytes_to_words, mnemonic_of,
                 Eof, Mov, Mop, Str, Adi, Sui, Jmp, Jz, Cmp, Prn, Mul, Div,
                 Unknown, OPCODES, MNEMONICS, ARITY,
                 OP_EOF, OP_MOV, OP_CMP, OP_STR)


# one representative instruction per opcode, with distinct operand values
SAMPLES = [
    Eof(),
    Mov(0x12, 0x34),
    Mop(0x01, 0xFE),
    Str(0x07, 0xBEEF),
    Adi(0xFF, 0x0001),
    Sui(0x00, 0xFFFF),
    Jmp(0x2A),
    Jz(0x00),
    Cmp(0x10, 0x20),
    Prn(0x99),
    Mul(0x03, 0x04),
    Div(0x05, 0x06),
]


class TestOpcodeTable(unittest.TestCase):

    def test_codes(self):
        self.assertEqual(OPCODES, {
            "eof": 0xFF, "mov": 0x01, "str": 0x02, "adi": 0x03,
            "sui": 0x04, "jmp": 0x05, "jz": 0x06, "cmp": 0x07,
            "prn": 0x08, "mul": 0x09, "div": 0x0A, "mop": 0x0B,
        })

    def test_reverse_table(self):
        for name, code in OPCODES.items():
            self.assertEqual(MNEMONICS[code], name)

    def test_arity(self):
        self.assertEqual(len(ARITY["eof"]), 0)
        self.assertEqual(len(ARITY["prn"]), 1)
        self.assertEqual(len(ARITY["cmp"]), 2)


class TestLayout(unittest.TestCase):

    def test_split_compose(self):
        self.assertEqual(split_word(0x01020304), (1, 2, 3, 4))
        self.assertEqual(compose_word(1, 2, 3, 4), 0x01020304)

    def test_eof_ignores_operands(self):
        self.assertEqual(decode(0xFF123456), Eof())

    def test_mov_source_in_low_byte(self):
        self.assertEqual(decode(0x01050009), Mov(dst=5, src=9))
        self.assertEqual(encode(Mov(5, 9)), 0x01050009)

    def test_cmp_second_address_in_high_byte(self):
        self.assertEqual(decode(0x07050900), Cmp(a=5, b=9))
        self.assertEqual(encode(Cmp(5, 9)), 0x07050900)

    def test_immediate_is_big_endian_16(self):
        self.assertEqual(decode(0x02030102), Str(dst=3, imm=0x0102))
        self.assertEqual(encode(Str(0, 10)), 0x0200000A)

    def test_jump_target_in_op1(self):
        self.assertEqual(decode(0x05070000), Jmp(target=7))
        self.assertEqual(decode(0x06070000), Jz(target=7))

    def test_prn_ignores_trailing(self):
        self.assertEqual(decode(0x0804FFFF), Prn(addr=4))

    def test_unknown(self):
        instr = decode(0x42010203)
        self.assertEqual(instr, Unknown(opcode=0x42, word=0x42010203))
        self.assertEqual(encode(instr), 0x42010203)
        self.assertEqual(decode(0), Unknown(0, 0))

    def test_encode_rejects_big_immediate(self):
        with self.assertRaises(ValueError):
            encode(Adi(0, 0x10000))

    def test_encode_rejects_non_instruction(self):
        with self.assertRaises(TypeError):
            encode("mov 1, 2")


@pytest.mark.parametrize("instr", SAMPLES, ids=lambda i: type(i).__name__)
def test_encode_decode_inverse(instr):
    word = encode(instr)
    assert decode(word) == instr
    assert encode(decode(word)) == word
    assert split_word(word)[0] == OPCODES[mnemonic_of(instr)]


class TestBuild(unittest.TestCase):

    def test_build(self):
        self.assertEqual(build("STR", 1, 500), Str(1, 500))
        self.assertEqual(build("eof"), Eof())

    def test_build_errors(self):
        with self.assertRaises(KeyError):
            build("nop")
        with self.assertRaises(ValueError):
            build("mov", 1)
        with self.assertRaises(ValueError):
            build("mov", 1, 256)
        with self.assertRaises(ValueError):
            build("adi", 1, 70000)


class TestWordStream(unittest.TestCase):

    def test_roundtrip(self):
        words = [0x0200000A, 0xFF000000, 0xDEADBEEF]
        data = words_to_bytes(words)
        self.assertEqual(data[:4], b"\x02\x00\x00\x0A")
        self.assertEqual(bytes_to_words(data), words)

    def test_empty(self):
        self.assertEqual(bytes_to_words(b""), [])
        self.assertEqual(words_to_bytes([]), b"")

    def test_partial_word(self):
        with self.assertRaises(ValueError):
            bytes_to_words(b"\x00\x00\x00\x00\x01")


class TestDisassemble(unittest.TestCase):

    def test_forms(self):
        self.assertEqual(disassemble(0xFF000000), "eof")
        self.assertEqual(disassemble(0x01050009), "mov 5, 9")
        self.assertEqual(disassemble(0x02000048), "str 0, 0x0048")
        self.assertEqual(disassemble(0x07050900), "cmp 5, 9")
        self.assertEqual(disassemble(0x08030000), "prn 3")

    def test_unknown(self):
        self.assertEqual(disassemble(0x42000001), ".word 0x42000001")

    def test_noncanonical_as_word(self):
        self.assertEqual(disassemble(0xFF000001), ".word 0xff000001")
        self.assertEqual(disassemble(0x05070100), ".word 0x05070100")

    def test_constants(self):
        self.assertEqual((OP_EOF, OP_MOV, OP_CMP, OP_STR),
                         (0xFF, 0x01, 0x07, 0x02))
