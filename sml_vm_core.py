#!/usr/bin/env python3
# sml_vm_core.py
#
# Noyau de l'interpréteur SML (Simple Machine Language).
# - Program : lignes numérotées à partir de 1, immuables après chargement
# - tokenize / decode_line : une ligne -> Instruction (op + opérande)
# - EvalStack : pile d'entiers, unique stockage de la machine
# - VM : compteur de programme, dispatch des 7 instructions, sauts absolus
# - Sortie centralisée via VM.emit(text) / VM.emit_error(err)
#
from __future__ import annotations
import unittest
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple
import io, os, re, sys, tempfile

# ------------------------------ Configuration --------------------------------

MAX_LINES = 500
MAX_LINE_LENGTH = 15   # terminateur compris, comme le buffer fgets d'origine
INT_BITS = 32

JUMP_RANGES = ("program", "capacity")

@dataclass(frozen=True)
class VMConfig:
    max_lines: int = MAX_LINES
    max_line_length: int = MAX_LINE_LENGTH
    int_bits: int = INT_BITS
    # "program"  : cible de saut dans [1, N] (lignes chargées)
    # "capacity" : cible dans [1, max_lines], comportement permissif historique
    jump_range: str = "program"
    trace: bool = False

    def __post_init__(self) -> None:
        if self.max_lines < 1:
            raise ValueError("max_lines must be >= 1")
        if self.max_line_length < 2:
            raise ValueError("max_line_length must be >= 2")
        if self.jump_range not in JUMP_RANGES:
            raise ValueError(f"jump_range must be one of {JUMP_RANGES}")

    @property
    def int_min(self) -> int: return -(1 << (self.int_bits - 1))
    @property
    def int_max(self) -> int: return (1 << (self.int_bits - 1)) - 1

    def wrap(self, value: int) -> int:
        """Ramène value dans l'entier signé de int_bits bits (complément à deux)."""
        mask = (1 << self.int_bits) - 1
        value &= mask
        if value > self.int_max:
            value -= 1 << self.int_bits
        return value

DEFAULT_CONFIG = VMConfig()

# ------------------------------ Errors ---------------------------------------

class ErrorCode(IntEnum):
    UNKNOWN_INSTRUCTION = 1
    NOT_AN_INTEGER      = 2
    TOO_MANY_TOKENS     = 3
    INVALID_JUMP_TARGET = 4
    EMPTY_STACK         = 5
    EMPTY_LINE          = 6
    CANNOT_OPEN         = 7
    PROGRAM_TOO_LARGE   = 8
    LINE_TOO_LONG       = 9
    USAGE               = 10
    BAD_ENCODING        = 11


class SMLError(RuntimeError):
    """
    Base de toutes les erreurs SML. Toutes sont fatales pour l'exécution.

    lineno est None tant que l'erreur n'a pas été rattachée à une ligne
    (cas de EvalStack, qui ne connaît pas le compteur de programme).
    """
    # None sur les classes de famille : seules les feuilles sont levées
    code: Optional[ErrorCode] = None

    def __init__(self, message: str, lineno: Optional[int] = None) -> None:
        if self.code is None:
            raise TypeError(f"{type(self).__name__} is abstract, raise a concrete error kind")
        super().__init__(message)
        self.message = message
        self.lineno = lineno

    def at_line(self, lineno: int) -> "SMLError":
        if self.lineno is None:
            self.lineno = lineno
        return self

    def __str__(self) -> str:
        if self.lineno is None:
            return self.message
        return f"Line {self.lineno}: {self.message}"

class SMLSyntaxError(SMLError): ...
class OperandError(SMLError): ...
class SMLRuntimeError(SMLError): ...
class ProgramIOError(SMLError): ...

class TooManyTokensError(SMLSyntaxError):
    code = ErrorCode.TOO_MANY_TOKENS
class EmptyLineError(SMLSyntaxError):
    code = ErrorCode.EMPTY_LINE
class NotAnIntegerError(OperandError):
    code = ErrorCode.NOT_AN_INTEGER
class InvalidJumpTargetError(OperandError):
    code = ErrorCode.INVALID_JUMP_TARGET
class EmptyStackError(SMLRuntimeError):
    code = ErrorCode.EMPTY_STACK
class UnknownInstructionError(SMLRuntimeError):
    code = ErrorCode.UNKNOWN_INSTRUCTION
class CannotOpenError(ProgramIOError):
    code = ErrorCode.CANNOT_OPEN
class ProgramTooLargeError(ProgramIOError):
    code = ErrorCode.PROGRAM_TOO_LARGE
class LineTooLongError(ProgramIOError):
    code = ErrorCode.LINE_TOO_LONG
class BadEncodingError(ProgramIOError):
    code = ErrorCode.BAD_ENCODING

# ------------------------------ Line Store -----------------------------------

class Program:
    """Lignes brutes du programme, indexées à partir de 1. Immuable."""

    def __init__(self, lines: Iterable[str] = ()) -> None:
        self._lines: Tuple[str, ...] = tuple(lines)

    def __len__(self) -> int: return len(self._lines)
    def __iter__(self): return iter(self._lines)
    def __repr__(self) -> str: return f"Program({len(self._lines)} lines)"

    def line(self, lineno: int) -> str:
        if not (1 <= lineno <= len(self._lines)):
            raise IndexError(f"no line {lineno}")
        return self._lines[lineno - 1]

    def numbered(self) -> List[Tuple[int, str]]:
        return list(enumerate(self._lines, start=1))

    @staticmethod
    def from_text(text: str, config: VMConfig = DEFAULT_CONFIG) -> "Program":
        return load_program(split_lines(text), config)


def load_program(source: Iterable[str], config: VMConfig = DEFAULT_CONFIG) -> Program:
    """
    Charge au plus config.max_lines lignes. Le '\\n' final de chaque ligne est
    retiré ; une ligne plus longue que max_line_length - 1 est refusée.
    Aucune validation des instructions ici (validation paresseuse).
    """
    lines: List[str] = []
    limit = config.max_line_length - 1
    for lineno, raw in enumerate(source, start=1):
        if lineno > config.max_lines:
            raise ProgramTooLargeError(
                f"Program has more than {config.max_lines} lines")
        ln = raw[:-1] if raw.endswith("\n") else raw
        if ln.endswith("\r"):
            ln = ln[:-1]
        if len(ln) > limit:
            raise LineTooLongError(
                f"Line is longer than {limit} characters", lineno)
        lines.append(ln)
    return Program(lines)


def split_lines(text: str) -> List[str]:
    """Découpe sur "\\n" seulement (pas \\x0c, \\u2028... comme str.splitlines)."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def load_file(path: str, config: VMConfig = DEFAULT_CONFIG) -> Program:
    """Lit les octets du fichier puis décode en UTF-8 ; même découpage que Program.from_text."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise CannotOpenError(f"Error opening file: {e.strerror or e}") from e
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        lineno = data.count(b"\n", 0, e.start) + 1
        raise BadEncodingError(
            f"Invalid UTF-8 byte 0x{data[e.start]:02x}", lineno) from e
    return Program.from_text(text, config)

# ------------------------------ Tokenizer ------------------------------------

def tokenize(line: str) -> Tuple[str, Optional[str]]:
    """( line -- mnemonic operand|None ) ; découpe sur les blancs."""
    parts = line.split()
    if not parts:
        raise EmptyLineError("Syntax Error, empty line.")
    if len(parts) > 2:
        raise TooManyTokensError("Syntax Error, cannot have more than two tokens.")
    return parts[0], (parts[1] if len(parts) == 2 else None)

# ------------------------------ Instructions ---------------------------------

class Op(Enum):
    PUSH  = "push"
    POP   = "pop"
    ADD   = "add"
    IFEQ  = "ifeq"
    JUMP  = "jump"
    PRINT = "print"
    DUP   = "dup"

MNEMONICS: Dict[str, Op] = {op.value: op for op in Op}
OPS_WITH_OPERAND = frozenset({Op.PUSH, Op.IFEQ, Op.JUMP})
JUMP_OPS = frozenset({Op.IFEQ, Op.JUMP})

_INT_RE = re.compile(r"[+-]?[0-9]+")

@dataclass(frozen=True)
class Instruction:
    op: Op
    arg: Optional[int] = None

    def __str__(self) -> str:
        return self.op.value if self.arg is None else f"{self.op.value} {self.arg}"


def parse_int(tok: str, config: VMConfig = DEFAULT_CONFIG) -> int:
    """Entier base 10 complet et dans la largeur configurée, sinon NotAnIntegerError."""
    if not _INT_RE.fullmatch(tok):
        raise NotAnIntegerError(f"Token {tok} is not an int.")
    val = int(tok, 10)
    if not (config.int_min <= val <= config.int_max):
        raise NotAnIntegerError(f"Token {tok} is not an int.")
    return val


def decode_line(line: str, n_lines: int, config: VMConfig = DEFAULT_CONFIG) -> Instruction:
    """
    Décode une ligne en Instruction, en validant la syntaxe et l'opérande.
    n_lines sert à valider les cibles de saut quand jump_range == "program".
    Les erreurs levées n'ont pas encore de numéro de ligne.
    """
    mnemonic, operand = tokenize(line)
    op = MNEMONICS.get(mnemonic)
    if op is None:
        raise UnknownInstructionError(f"{mnemonic} is not a valid command")
    if op not in OPS_WITH_OPERAND:
        # un opérande en trop est ignoré, comme l'interpréteur C
        return Instruction(op)
    if operand is None:
        raise NotAnIntegerError(f"{mnemonic} expects an integer operand.")
    val = parse_int(operand, config)
    if op in JUMP_OPS:
        upper = n_lines if config.jump_range == "program" else config.max_lines
        if not (1 <= val <= upper):
            raise InvalidJumpTargetError(f"Cannot jump to line {val}")
    return Instruction(op, val)

# ------------------------------ Evaluation stack -----------------------------

class EvalStack:
    """Pile LIFO d'entiers ; le sommet est le dernier élément de la liste."""

    def __init__(self) -> None:
        self._items: List[int] = []

    def __len__(self) -> int: return len(self._items)
    def __repr__(self) -> str: return f"EvalStack({self.snapshot()!r})"

    def push(self, v: int) -> None:
        self._items.append(v)

    def pop(self) -> int:
        if not self._items:
            raise EmptyStackError("Cannot pop from an empty stack")
        return self._items.pop()

    def peek(self) -> int:
        if not self._items:
            raise EmptyStackError("Cannot read the top of an empty stack")
        return self._items[-1]

    def is_empty(self) -> bool:
        return not self._items

    def snapshot(self) -> Tuple[int, ...]:
        """Copie non destructive, sommet en premier."""
        return tuple(reversed(self._items))

    def clear(self) -> None:
        self._items.clear()

# ------------------------------ VM Core --------------------------------------

# REPL dot-commands (single source of truth)
DOT_CMDS = {".check", ".help", ".pc", ".program", ".see", ".stack"}


class VM:
    """
    Session d'exécution : programme, pile, compteur de programme, dernière erreur.

    Les instructions sont décodées à la première visite de leur ligne puis
    gardées en cache (les lignes sont immuables). check() décode tout le
    programme d'avance pour connaître les erreurs avant exécution.
    """

    def __init__(self, program: Optional[Program] = None, config: VMConfig = DEFAULT_CONFIG):
        self.config = config
        self.program: Program = program if program is not None else Program()
        self.stack = EvalStack()
        self.pc: int = 1
        self.steps: int = 0
        self.halted: bool = False
        self.last_error: Optional[SMLError] = None
        self._decoded: Dict[int, Instruction] = {}
        # Sortie par défaut (remplacée par interpret/run_program ou par un host)
        self.out = io.StringIO()
        self.err = io.StringIO()

    @staticmethod
    def from_text(text: str, config: VMConfig = DEFAULT_CONFIG) -> "VM":
        return VM(Program.from_text(text, config), config)

    def load(self, source: Iterable[str]) -> None:
        self.program = load_program(source, self.config)
        self._decoded.clear()
        self.reset()

    def reset(self) -> None:
        self.stack.clear()
        self.pc = 1
        self.steps = 0
        self.halted = False
        self.last_error = None

    # --- Sorties (hookables par le runtime) ---
    def emit(self, text: str) -> None:
        """Point central de sortie texte du programme."""
        self.out.write(text)

    def emit_error(self, err: SMLError) -> None:
        self.err.write(f"{err}\n")

    def emit_trace(self, lineno: int, line: str) -> None:
        self.err.write(f"[trace] {lineno}: {line}\n")

    def render_stack(self) -> str:
        values = self.stack.snapshot()
        if not values:
            return "The stack is empty"
        return "The stack:" + "".join(f" {v}," for v in values)

    # --- Décodage ---
    def running(self) -> bool:
        return not self.halted and 1 <= self.pc <= len(self.program)

    def instruction_at(self, lineno: int) -> Instruction:
        ins = self._decoded.get(lineno)
        if ins is None:
            try:
                ins = decode_line(self.program.line(lineno), len(self.program), self.config)
            except SMLError as e:
                raise e.at_line(lineno)
            self._decoded[lineno] = ins
        return ins

    def check(self) -> List[SMLError]:
        """Décode toutes les lignes sans rien exécuter ; rend les erreurs trouvées."""
        errors: List[SMLError] = []
        for lineno in range(1, len(self.program) + 1):
            try:
                self.instruction_at(lineno)
            except SMLError as e:
                errors.append(e)
        return errors

    # --- Exécution ---
    def execute(self, ins: Instruction) -> Optional[int]:
        """Exécute une instruction ; rend la ligne cible si le contrôle est transféré."""
        op = ins.op
        S = self.stack
        if op is Op.PUSH:
            S.push(ins.arg)
        elif op is Op.POP:
            S.pop()
        elif op is Op.ADD:
            a = S.pop()
            b = S.pop()
            S.push(self.config.wrap(a + b))
        elif op is Op.IFEQ:
            if S.pop() == 0:
                return ins.arg
        elif op is Op.JUMP:
            return ins.arg
        elif op is Op.PRINT:
            self.emit(self.render_stack() + "\n")
        elif op is Op.DUP:
            S.push(S.peek())
        else:
            raise UnknownInstructionError(f"{op} is not a valid command")
        return None

    def _fail(self, err: SMLError, lineno: int) -> SMLError:
        err.at_line(lineno)
        self.halted = True
        self.last_error = err
        return err

    def step_one(self) -> bool:
        """
        Exécute exactement une instruction (la ligne pc).
        Rend True tant qu'il reste du travail, False quand le programme est fini.
        Lève SMLError (fatale) ; la session est alors marquée halted.
        """
        if not self.running():
            return False
        lineno = self.pc
        try:
            ins = self.instruction_at(lineno)
            if self.config.trace:
                self.emit_trace(lineno, self.program.line(lineno))
            target = self.execute(ins)
        except SMLError as e:
            raise self._fail(e, lineno)
        self.steps += 1
        # target - 1 puis +1 : la prochaine ligne visitée est bien target
        self.pc = (target - 1 if target is not None else lineno) + 1
        return self.running()

    def run(self) -> int:
        """Boucle principale : tourne jusqu'à sortir de [1, N]. Rend 0 ou lève SMLError."""
        while self.step_one():
            pass
        return 0

    def execute_line(self, text: str) -> None:
        """
        Mode immédiat (REPL) : décode et exécute une ligne hors programme.
        Un saut positionne pc pour la prochaine exécution.
        """
        try:
            ins = decode_line(text, len(self.program), self.config)
            target = self.execute(ins)
        except SMLError as e:
            self.last_error = e
            raise
        if target is not None:
            # saut explicite : la session repart de target, l'erreur est oubliée
            self.pc = target
            self.halted = False
            self.last_error = None

    def interpret(self, *, out: Optional[Any] = None, err: Optional[Any] = None) -> int:
        """
        Lance run() en redirigeant les sorties ; rend le code de sortie
        (0 ou ErrorCode) après avoir rapporté l'erreur éventuelle.
        """
        old_out, old_err = self.out, self.err
        if out is not None: self.out = out
        if err is not None: self.err = err
        try:
            try:
                return self.run()
            except SMLError as e:
                self.emit_error(e)
                return int(e.code)
        finally:
            self.out, self.err = old_out, old_err

    # --- Dot-commands via dispatch table ---
    def _dotcmd_dispatch(self):
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".pc": self._dot_pc,
            ".program": self._dot_program,
            ".see": self._dot_see,
            ".check": self._dot_check,
        }

    def _dot_help(self, args, out):
        out.write(".stack .pc .program [.see <line>] .check\n")

    def _dot_stack(self, args, out):
        out.write(f"<{len(self.stack)}> " + " ".join(map(str, reversed(self.stack.snapshot()))) + " \n")

    def _dot_pc(self, args, out):
        state = "halted" if self.halted else ("running" if self.running() else "done")
        out.write(f"pc={self.pc} steps={self.steps} {state}\n")

    def _dot_program(self, args, out):
        if not len(self.program):
            out.write("(empty program)\n"); return
        for lineno, line in self.program.numbered():
            mark = ">" if lineno == self.pc else " "
            out.write(f"{mark}{lineno:4d}  {line}\n")

    def _dot_see(self, args, out):
        if not args:
            out.write("usage: .see <line>\n"); return
        try:
            lineno = int(args[0])
            line = self.program.line(lineno)
        except (ValueError, IndexError):
            out.write(f"no such line: {args[0]}\n"); return
        try:
            out.write(f"{lineno}: {line!r} -> {self.instruction_at(lineno)}\n")
        except SMLError as e:
            out.write(f"{lineno}: {line!r} -> {e.code.name}: {e.message}\n")

    def _dot_check(self, args, out):
        errors = self.check()
        if not errors:
            out.write(f"ok ({len(self.program)} lines)\n"); return
        for e in errors:
            out.write(f"{e}\n")

    def handle_dot_command(self, line: str, out):
        parts = line.split()
        cmd, args = parts[0], parts[1:]
        h = self._dotcmd_dispatch().get(cmd)
        if not h:
            out.write(f"unknown dot-cmd: {cmd}\n")
            return
        h(args, out)

####################################################################
# Tests unitaires du noyau

class TestProgramLoader(unittest.TestCase):
    def test_strips_newlines_and_is_one_indexed(self):
        prog = load_program(["push 1\n", "print\r\n", "pop"])
        self.assertEqual(len(prog), 3)
        self.assertEqual(prog.line(1), "push 1")
        self.assertEqual(prog.line(2), "print")
        self.assertEqual(prog.line(3), "pop")
        with self.assertRaises(IndexError):
            prog.line(0)

    def test_program_too_large(self):
        cfg = VMConfig(max_lines=3)
        load_program(["pop"] * 3, cfg)
        with self.assertRaises(ProgramTooLargeError) as cm:
            load_program(["pop"] * 4, cfg)
        self.assertEqual(cm.exception.code, ErrorCode.PROGRAM_TOO_LARGE)

    def test_line_too_long(self):
        load_program(["push 123456789"])        # 14 caractères : accepté
        with self.assertRaises(LineTooLongError) as cm:
            load_program(["pop", "push 1234567890"])
        self.assertEqual(cm.exception.lineno, 2)
        self.assertEqual(cm.exception.code, ErrorCode.LINE_TOO_LONG)

    def test_load_file_missing(self):
        missing = os.path.join(tempfile.gettempdir(), "sml-does-not-exist.sml")
        with self.assertRaises(CannotOpenError) as cm:
            load_file(missing)
        self.assertTrue(str(cm.exception).startswith("Error opening file:"))

    def test_load_file(self):
        with tempfile.NamedTemporaryFile("w", suffix=".sml", delete=False) as f:
            f.write("push 2\ndup\nadd\nprint\n")
            path = f.name
        try:
            prog = load_file(path)
        finally:
            os.unlink(path)
        self.assertEqual(list(prog), ["push 2", "dup", "add", "print"])

    def _write_bytes(self, data: bytes) -> str:
        fd, path = tempfile.mkstemp(suffix=".sml")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self.addCleanup(os.unlink, path)
        return path

    def test_load_file_invalid_utf8_reports_line(self):
        path = self._write_bytes(b"push 1\npush \xff\nprint\n")
        with self.assertRaises(BadEncodingError) as cm:
            load_file(path)
        self.assertEqual(cm.exception.lineno, 2)
        self.assertEqual(cm.exception.code, ErrorCode.BAD_ENCODING)
        self.assertEqual(str(cm.exception), "Line 2: Invalid UTF-8 byte 0xff")

    def test_from_text_and_load_file_number_lines_alike(self):
        text = "push 1\x0cpop\nprint \r\njump 1\n"
        path = self._write_bytes(text.encode("utf-8"))
        from_file = load_file(path)
        from_text = Program.from_text(text)
        self.assertEqual(list(from_file), list(from_text))
        self.assertEqual(len(from_text), 3)
        self.assertEqual(from_text.line(2), "print ")

    def test_family_bases_cannot_be_raised(self):
        for cls in (SMLError, SMLSyntaxError, OperandError, SMLRuntimeError, ProgramIOError):
            with self.assertRaises(TypeError, msg=cls.__name__):
                cls("boom")
        self.assertEqual(NotAnIntegerError("x").code, ErrorCode.NOT_AN_INTEGER)


class TestTokenizer(unittest.TestCase):
    def test_token_counts(self):
        self.assertEqual(tokenize("pop"), ("pop", None))
        self.assertEqual(tokenize("  push \t 12 "), ("push", "12"))
        with self.assertRaises(TooManyTokensError):
            tokenize("push 1 2")
        with self.assertRaises(EmptyLineError):
            tokenize("")
        with self.assertRaises(EmptyLineError):
            tokenize("   ")

    def test_decode_operands(self):
        self.assertEqual(decode_line("push -7", 1), Instruction(Op.PUSH, -7))
        self.assertEqual(decode_line("push +7", 1), Instruction(Op.PUSH, 7))
        self.assertEqual(decode_line("pop 3", 1), Instruction(Op.POP))
        for bad in ("push abc", "push 12x", "push 1_0", "push", "push 2147483648"):
            with self.assertRaises(NotAnIntegerError, msg=bad):
                decode_line(bad, 1)
        self.assertEqual(decode_line("push -2147483648", 1).arg, -2147483648)

    def test_decode_jump_ranges(self):
        self.assertEqual(decode_line("jump 3", 3), Instruction(Op.JUMP, 3))
        with self.assertRaises(InvalidJumpTargetError):
            decode_line("jump 4", 3)
        with self.assertRaises(InvalidJumpTargetError):
            decode_line("ifeq 0", 3)
        cap = VMConfig(jump_range="capacity")
        self.assertEqual(decode_line("jump 500", 3, cap).arg, 500)
        with self.assertRaises(InvalidJumpTargetError):
            decode_line("jump 501", 3, cap)

    def test_unknown_is_case_sensitive(self):
        with self.assertRaises(UnknownInstructionError) as cm:
            decode_line("PUSH 1", 1)
        self.assertIn("PUSH is not a valid command", str(cm.exception))


class TestEvalStack(unittest.TestCase):
    def test_lifo_and_snapshot(self):
        s = EvalStack()
        self.assertTrue(s.is_empty())
        for v in (1, 2, 3):
            s.push(v)
        self.assertEqual(s.snapshot(), (3, 2, 1))
        self.assertEqual(s.peek(), 3)
        self.assertEqual(s.pop(), 3)
        self.assertEqual(len(s), 2)

    def test_empty_errors(self):
        s = EvalStack()
        with self.assertRaises(EmptyStackError):
            s.pop()
        with self.assertRaises(EmptyStackError):
            s.peek()


class TestVM(unittest.TestCase):
    def feed(self, src: str, config: VMConfig = DEFAULT_CONFIG):
        vm = VM.from_text(src, config)
        out, err = io.StringIO(), io.StringIO()
        code = vm.interpret(out=out, err=err)
        return vm, code, out.getvalue(), err.getvalue()

    def test_push_print_top_first(self):
        vm, code, out, _ = self.feed("push 1\npush 2\npush 3\nprint")
        self.assertEqual(code, 0)
        self.assertEqual(out, "The stack: 3, 2, 1,\n")

    def test_print_empty(self):
        _, code, out, _ = self.feed("print")
        self.assertEqual((code, out), (0, "The stack is empty\n"))

    def test_add(self):
        _, _, out, _ = self.feed("push 3\npush 0\nadd\nprint")
        self.assertEqual(out, "The stack: 3,\n")
        _, _, out, _ = self.feed("push -4\npush 10\nadd\nprint")
        self.assertEqual(out, "The stack: 6,\n")

    def test_add_wraps_to_int_width(self):
        vm, code, _, _ = self.feed("push 2147483647\npush 1\nadd", VMConfig(max_line_length=20))
        self.assertEqual(code, 0)
        self.assertEqual(vm.stack.snapshot(), (-2147483648,))

    def test_add_second_pop_fails(self):
        vm, code, _, err = self.feed("push 1\nadd")
        self.assertEqual(code, ErrorCode.EMPTY_STACK)
        self.assertEqual(err, "Line 2: Cannot pop from an empty stack\n")
        self.assertTrue(vm.halted)
        self.assertIsInstance(vm.last_error, EmptyStackError)

    def test_pop_empty_is_fatal(self):
        vm, code, out, _ = self.feed("pop\nprint")
        self.assertEqual(code, ErrorCode.EMPTY_STACK)
        self.assertEqual(out, "")
        self.assertEqual(vm.last_error.lineno, 1)

    def test_dup(self):
        vm, code, _, _ = self.feed("push 9\ndup")
        self.assertEqual(vm.stack.snapshot(), (9, 9))
        _, code, _, _ = self.feed("dup")
        self.assertEqual(code, ErrorCode.EMPTY_STACK)

    def test_ifeq_taken_skips_lines(self):
        vm, code, out, _ = self.feed("push 5\npush 0\nifeq 5\npush 99\nprint")
        self.assertEqual(code, 0)
        self.assertEqual(out, "The stack: 5,\n")

    def test_ifeq_not_taken_falls_through(self):
        vm, code, out, _ = self.feed("push 5\npush 1\nifeq 5\npush 99\nprint")
        self.assertEqual(out, "The stack: 99, 5,\n")

    def test_jump_and_countdown_loop(self):
        src = "push 3\ndup\nifeq 8\npush -1\nadd\nprint\njump 2\npop"
        vm, code, out, _ = self.feed(src)
        self.assertEqual(code, 0)
        self.assertEqual(out.splitlines(),
                         ["The stack: 2,", "The stack: 1,", "The stack: 0,"])
        self.assertTrue(vm.stack.is_empty())

    def test_not_an_integer_halts_before_mutation(self):
        vm, code, _, err = self.feed("push 1\npush 12x\npush 2")
        self.assertEqual(code, ErrorCode.NOT_AN_INTEGER)
        self.assertEqual(err, "Line 2: Token 12x is not an int.\n")
        self.assertEqual(vm.stack.snapshot(), (1,))

    def test_invalid_jump_target(self):
        vm, code, _, err = self.feed("push 0\nifeq 9")
        self.assertEqual(code, ErrorCode.INVALID_JUMP_TARGET)
        self.assertEqual(err, "Line 2: Cannot jump to line 9\n")
        self.assertEqual(vm.stack.snapshot(), (0,))

    def test_capacity_jump_past_end_terminates(self):
        vm, code, out, _ = self.feed("jump 400\nprint", VMConfig(jump_range="capacity"))
        self.assertEqual((code, out), (0, ""))

    def test_syntax_errors(self):
        _, code, _, err = self.feed("push 1\n\nprint")
        self.assertEqual(code, ErrorCode.EMPTY_LINE)
        self.assertEqual(err, "Line 2: Syntax Error, empty line.\n")
        _, code, _, err = self.feed("push 1 2")
        self.assertEqual(code, ErrorCode.TOO_MANY_TOKENS)
        _, code, _, err = self.feed("mul")
        self.assertEqual(code, ErrorCode.UNKNOWN_INSTRUCTION)
        self.assertEqual(err, "Line 1: mul is not a valid command\n")

    def test_unreached_bad_line_is_not_executed(self):
        vm, code, out, _ = self.feed("jump 3\nbogus\nprint")
        self.assertEqual((code, out), (0, "The stack is empty\n"))
        errors = vm.check()
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].lineno, 2)

    def test_step_one_and_trace(self):
        vm = VM.from_text("push 1\npush 2\nadd", VMConfig(trace=True))
        self.assertTrue(vm.step_one())
        self.assertEqual(vm.pc, 2)
        self.assertTrue(vm.step_one())
        self.assertFalse(vm.step_one())
        self.assertFalse(vm.step_one())
        self.assertEqual(vm.stack.snapshot(), (3,))
        self.assertEqual(vm.steps, 3)
        self.assertIn("[trace] 3: add", vm.err.getvalue())

    def test_execute_line_immediate(self):
        vm = VM.from_text("print\nprint")
        vm.execute_line("push 4")
        vm.execute_line("dup")
        self.assertEqual(vm.stack.snapshot(), (4, 4))
        vm.execute_line("jump 2")
        self.assertEqual(vm.pc, 2)
        with self.assertRaises(EmptyStackError):
            VM().execute_line("pop")

    def test_immediate_jump_clears_last_error(self):
        vm = VM.from_text("push 1\npop\npop")
        with self.assertRaises(EmptyStackError):
            vm.run()
        self.assertTrue(vm.halted)
        vm.execute_line("jump 1")
        self.assertEqual(vm.pc, 1)
        self.assertFalse(vm.halted)
        self.assertIsNone(vm.last_error)

    def test_dot_commands(self):
        vm = VM.from_text("push 1\npush 2\nnope")
        vm.step_one(); vm.step_one()
        out = io.StringIO()
        vm.handle_dot_command(".stack", out)
        vm.handle_dot_command(".pc", out)
        vm.handle_dot_command(".see 3", out)
        vm.handle_dot_command(".check", out)
        vm.handle_dot_command(".frob", out)
        text = out.getvalue()
        self.assertIn("<2> 1 2", text)
        self.assertIn("pc=3 steps=2", text)
        self.assertIn("UNKNOWN_INSTRUCTION", text)
        self.assertIn("Line 3: nope is not a valid command", text)
        self.assertIn("unknown dot-cmd: .frob", text)


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)

if __name__ == "__main__" :
    test_all()
