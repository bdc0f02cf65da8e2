#!/usr/bin/env python3
# sml_runtime.py
#
# Couche runtime au-dessus du noyau sml_vm_core.VM :
# - HasStdoutHandler : protocole du "host" qui reçoit sorties et diagnostics
# - HostedVM : VM dont toute la sortie passe par le host
# - ConsoleSink : host terminal (stdout pour print, stderr pour les erreurs)
# - run_source / run_file : une session complète -> code de sortie
# - main() : ligne de commande  `sml <program-path>`
#
# Tests intégrés :
#   python sml_runtime.py --test

from __future__ import annotations

import argparse
import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr
from typing import Iterable, List, Optional, TextIO, Tuple

from sml_vm_core import (
    VM, VMConfig, DEFAULT_CONFIG, ErrorCode, SMLError, JUMP_RANGES,
    MAX_LINES, MAX_LINE_LENGTH, load_program, load_file,
)


# ============================================================
# Protocole host minimal
# ============================================================

class HasStdoutHandler:
    """
    Protocole minimal pour le "host" vu par HostedVM.

    Le host doit fournir :
      - handle_stdout(text: str) -> None      sortie de l'instruction print
      - handle_error(err: SMLError) -> None   diagnostic fatal (une fois par run)
      - handle_trace(lineno: int, line: str) -> None   si config.trace
    """

    def handle_stdout(self, text: str) -> None:
        raise NotImplementedError

    def handle_error(self, err: SMLError) -> None:
        raise NotImplementedError

    def handle_trace(self, lineno: int, line: str) -> None:
        raise NotImplementedError


# ============================================================
# HostedVM : VM + host
# ============================================================

class HostedVM(VM):
    """
    VM SML rattachée à un host.

    Override des points de sortie de VM : rien n'est écrit directement,
    tout est délégué au host.
    """

    def __init__(self, host: HasStdoutHandler, program=None, config: VMConfig = DEFAULT_CONFIG) -> None:
        super().__init__(program, config)
        self.host: HasStdoutHandler = host

    def emit(self, text: str) -> None:
        if text:
            self.host.handle_stdout(text)

    def emit_error(self, err: SMLError) -> None:
        self.host.handle_error(err)

    def emit_trace(self, lineno: int, line: str) -> None:
        self.host.handle_trace(lineno, line)

    def run_reporting(self) -> int:
        """run() puis rapporte l'erreur fatale éventuelle au host ; rend le code de sortie."""
        try:
            return self.run()
        except SMLError as e:
            self.emit_error(e)
            return int(e.code)


class ConsoleSink(HasStdoutHandler):
    """Host terminal : print -> stdout, diagnostics et trace -> stderr."""

    def __init__(self, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None) -> None:
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr

    def handle_stdout(self, text: str) -> None:
        self.stdout.write(text)
        self.stdout.flush()

    def handle_error(self, err: SMLError) -> None:
        self.stderr.write(f"{err}\n")
        self.stderr.flush()

    def handle_trace(self, lineno: int, line: str) -> None:
        self.stderr.write(f"[trace] {lineno}: {line}\n")


# ============================================================
# Sessions
# ============================================================

def run_source(source: Iterable[str], host: HasStdoutHandler,
               config: VMConfig = DEFAULT_CONFIG) -> int:
    """Charge puis exécute un programme ; rend 0 ou le code de l'erreur fatale."""
    try:
        program = load_program(source, config)
    except SMLError as e:
        host.handle_error(e)
        return int(e.code)
    return HostedVM(host, program, config).run_reporting()


def run_file(path: str, host: HasStdoutHandler, config: VMConfig = DEFAULT_CONFIG) -> int:
    try:
        program = load_file(path, config)
    except SMLError as e:
        host.handle_error(e)
        return int(e.code)
    return HostedVM(host, program, config).run_reporting()


def check_file(path: str, host: HasStdoutHandler, config: VMConfig = DEFAULT_CONFIG) -> int:
    """Valide toutes les lignes sans exécuter ; rend le code de la première erreur."""
    try:
        program = load_file(path, config)
    except SMLError as e:
        host.handle_error(e)
        return int(e.code)
    errors = VM(program, config).check()
    for e in errors:
        host.handle_error(e)
    return int(errors[0].code) if errors else 0


# ============================================================
# Ligne de commande
# ============================================================

class SMLArgumentParser(argparse.ArgumentParser):
    """argparse sort en 2 par défaut, ce qui se confond avec NOT_AN_INTEGER."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(int(ErrorCode.USAGE), f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    p = SMLArgumentParser(prog="sml", description="Simple Machine Language interpreter")
    p.add_argument("program", help="program file, one instruction per line")
    p.add_argument("--max-lines", type=int, default=MAX_LINES,
                   help=f"program capacity (default {MAX_LINES})")
    p.add_argument("--max-line-length", type=int, default=MAX_LINE_LENGTH,
                   help=f"line buffer size, terminator included (default {MAX_LINE_LENGTH})")
    p.add_argument("--jump-range", choices=JUMP_RANGES, default="program",
                   help="validate jump targets against loaded lines or capacity")
    p.add_argument("--trace", action="store_true", help="trace each executed line on stderr")
    p.add_argument("--check", action="store_true", help="validate the program without running it")
    return p


def config_from_args(args: argparse.Namespace) -> VMConfig:
    return VMConfig(max_lines=args.max_lines, max_line_length=args.max_line_length,
                    jump_range=args.jump_range, trace=args.trace)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))
    host = ConsoleSink()
    if args.check:
        return check_file(args.program, host, config)
    return run_file(args.program, host, config)


# ============================================================
# FakeHost pour tests unitaires
# ============================================================

class FakeHost(HasStdoutHandler):
    """Host factice qui enregistre tout ce que la VM lui envoie."""

    def __init__(self) -> None:
        self.stdout_events: List[str] = []
        self.errors: List[SMLError] = []
        self.traces: List[Tuple[int, str]] = []

    def handle_stdout(self, text: str) -> None:
        self.stdout_events.append(text)

    def handle_error(self, err: SMLError) -> None:
        self.errors.append(err)

    def handle_trace(self, lineno: int, line: str) -> None:
        self.traces.append((lineno, line))


# ============================================================
# Tests unitaires runtime
# ============================================================

def _write_tmp(text: str) -> str:
    with tempfile.NamedTemporaryFile("w", suffix=".sml", delete=False, encoding="utf-8") as f:
        f.write(text)
        return f.name


class TestHostedVM_IO(unittest.TestCase):
    def setUp(self) -> None:
        self.host = FakeHost()

    def test_print_goes_to_host(self) -> None:
        code = run_source("push 5\npush 0\nifeq 5\npush 99\nprint".split("\n"), self.host)
        self.assertEqual(code, 0)
        self.assertEqual(self.host.stdout_events, ["The stack: 5,\n"])
        self.assertEqual(self.host.errors, [])

    def test_error_reported_once_with_line(self) -> None:
        code = run_source(["push 1", "print", "pop", "pop", "print"], self.host)
        self.assertEqual(code, ErrorCode.EMPTY_STACK)
        self.assertEqual(self.host.stdout_events, ["The stack: 1,\n"])
        self.assertEqual(len(self.host.errors), 1)
        self.assertEqual(str(self.host.errors[0]), "Line 4: Cannot pop from an empty stack")

    def test_load_error_reported(self) -> None:
        code = run_source(["pop"] * 4, self.host, VMConfig(max_lines=3))
        self.assertEqual(code, ErrorCode.PROGRAM_TOO_LARGE)
        self.assertEqual(len(self.host.errors), 1)

    def test_trace_events(self) -> None:
        run_source(["push 1", "jump 3", "pop", "print"], self.host, VMConfig(trace=True))
        self.assertEqual(self.host.traces, [(1, "push 1"), (2, "jump 3"), (3, "pop"), (4, "print")])


class TestRunFile(unittest.TestCase):
    def setUp(self) -> None:
        self.host = FakeHost()

    def test_run_file(self) -> None:
        path = _write_tmp("push 3\npush 0\nadd\nprint\n")
        try:
            code = run_file(path, self.host)
        finally:
            os.unlink(path)
        self.assertEqual(code, 0)
        self.assertEqual(self.host.stdout_events, ["The stack: 3,\n"])

    def test_run_file_missing(self) -> None:
        code = run_file(os.path.join(tempfile.gettempdir(), "no-such-program.sml"), self.host)
        self.assertEqual(code, ErrorCode.CANNOT_OPEN)
        self.assertIn("Error opening file", str(self.host.errors[0]))

    def test_run_file_invalid_utf8(self) -> None:
        fd, path = tempfile.mkstemp(suffix=".sml")
        with os.fdopen(fd, "wb") as f:
            f.write(b"push 1\npush \xff\nprint\n")
        try:
            code = run_file(path, self.host)
        finally:
            os.unlink(path)
        self.assertEqual(code, ErrorCode.BAD_ENCODING)
        self.assertEqual([str(e) for e in self.host.errors], ["Line 2: Invalid UTF-8 byte 0xff"])
        self.assertEqual(self.host.stdout_events, [])

    def test_check_file_lists_all_errors(self) -> None:
        path = _write_tmp("jump 4\npush x\nfoo\nprint\n")
        try:
            code = check_file(path, self.host)
        finally:
            os.unlink(path)
        self.assertEqual(code, ErrorCode.NOT_AN_INTEGER)
        self.assertEqual([e.lineno for e in self.host.errors], [2, 3])
        self.assertEqual(self.host.stdout_events, [])


class TestMain(unittest.TestCase):
    def test_main_exit_codes(self) -> None:
        ok = _write_tmp("push 1\nprint\n")
        bad = _write_tmp("push 1\njump 7\n")
        out, err = io.StringIO(), io.StringIO()
        try:
            saved = sys.stdout, sys.stderr
            sys.stdout, sys.stderr = out, err
            try:
                self.assertEqual(main([ok]), 0)
                self.assertEqual(main([bad]), ErrorCode.INVALID_JUMP_TARGET)
                self.assertEqual(main(["--jump-range", "capacity", bad]), 0)
            finally:
                sys.stdout, sys.stderr = saved
        finally:
            os.unlink(ok); os.unlink(bad)
        self.assertEqual(out.getvalue(), "The stack: 1,\n")
        self.assertEqual(err.getvalue(), "Line 2: Cannot jump to line 7\n")

    def test_usage_error_exit_status(self) -> None:
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main([])
        self.assertEqual(cm.exception.code, ErrorCode.USAGE)

    def test_bad_config_is_usage_error(self) -> None:
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main(["--max-lines", "0", "prog.sml"])
        self.assertEqual(cm.exception.code, ErrorCode.USAGE)


# ============================================================
# Runner de tests
# ============================================================

def test_all() -> None:
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


if __name__ == "__main__":
    if "--test" in sys.argv:
        test_all()
    else:
        sys.exit(main())
