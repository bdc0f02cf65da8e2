#!/usr/bin/env python3
# sml_host_repl.py
#
# REPL host / débogueur pas-à-pas pour SML :
# - une session HostedVM courante (programme + pile + pc)
# - toutes les commandes host commencent par:  :host ...
# - les lignes sans préfixe sont exécutées immédiatement sur la pile courante
#
# Commandes host:
#   :host load FILE         -> charge un programme (nouvelle session)
#   :host run               -> exécute depuis pc jusqu'à la fin ou l'erreur
#   :host step [N]          -> exécute N instructions (1 par défaut)
#   :host reset             -> pc=1, pile vide
#   :host check             -> liste les erreurs de décodage du programme
#   :host .stack / .pc / .program / .see N / .help
#                           -> dot-commands sur la session courante
#   :host quit              -> quitte le REPL
#
# Tests intégrés :
#   python sml_host_repl.py --test

from __future__ import annotations

import io
import os
import shlex
import sys
import tempfile
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion, PathCompleter

from sml_vm_core import DOT_CMDS, MNEMONICS, SMLError, VMConfig, DEFAULT_CONFIG, load_file
from sml_runtime import HasStdoutHandler, HostedVM

HOST_CMDS = ["load", "run", "step", "reset", "check", "help", "quit"]


class ReplSink(HasStdoutHandler):
    """Host du REPL : tout sur stdout, pour rester sous le prompt."""

    def handle_stdout(self, text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def handle_error(self, err: SMLError) -> None:
        print(f"error: {err}")

    def handle_trace(self, lineno: int, line: str) -> None:
        print(f"[trace] {lineno}: {line}")


class HostREPL:
    """
    REPL texte par-dessus une HostedVM.

    - gère la session via :host load / run / step / reset / check
    - exécute les lignes SML tapées directement (mode immédiat)
    - intercepte :host .stack, :host .program, etc. et appelle handle_dot_command
    """

    def __init__(self, config: VMConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        self.sink = ReplSink()
        self.vm = HostedVM(self.sink, config=config)
        self.filename: Optional[str] = None

    # ------------------------------------------------------------------
    # Utilitaires internes
    # ------------------------------------------------------------------

    def _load(self, filename: str) -> None:
        try:
            program = load_file(filename, self.config)
        except SMLError as e:
            print(f"load: {e}")
            return
        self.vm = HostedVM(self.sink, program, self.config)
        self.filename = filename
        print(f"loaded {filename!r} ({len(program)} lines)")

    def _report_end(self) -> None:
        if self.vm.halted:
            return
        if not self.vm.running():
            print(f"program finished (pc={self.vm.pc}, {self.vm.steps} steps)")

    def _step(self, count: int) -> None:
        if self.vm.halted:
            print("session halted on error; use :host reset.")
            return
        for _ in range(count):
            if not self.vm.running():
                break
            lineno = self.vm.pc
            print(f"{lineno:4d}  {self.vm.program.line(lineno)}")
            try:
                self.vm.step_one()
            except SMLError as e:
                self.sink.handle_error(e)
                return
        self._report_end()

    def _run(self) -> None:
        if self.vm.halted:
            print("session halted on error; use :host reset.")
            return
        try:
            self.vm.run()
        except SMLError as e:
            self.sink.handle_error(e)
            return
        self._report_end()

    def _execute_immediate(self, line: str) -> None:
        if self.vm.halted:
            print("session halted on error; use :host reset.")
            return
        try:
            self.vm.execute_line(line)
        except SMLError as e:
            self.sink.handle_error(e)

    # ------------------------------------------------------------------
    # Commandes :host ...
    # ------------------------------------------------------------------

    def _handle_host_command(self, line: str) -> bool:
        """
        Traite une ligne commençant par ':host'.
        Retourne True si une commande host a été reconnue/traitée.
        Peut lever SystemExit pour :host quit.
        """
        rest = line.strip()[len(":host"):].strip()
        try:
            parts = shlex.split(rest)
        except ValueError as e:
            print(f"parse error in :host command: {e}")
            return True

        if not parts:
            self._print_help()
            return True

        cmd = parts[0]
        args = parts[1:]

        # dot-commands : :host .stack, :host .see 3, ...
        if cmd in DOT_CMDS or cmd.startswith("."):
            out = io.StringIO()
            self.vm.handle_dot_command(rest, out)
            sys.stdout.write(out.getvalue())
            sys.stdout.flush()
            return True

        if cmd == "load":
            if not args:
                print('usage: :host load "filename"')
                return True
            self._load(args[0])
            return True

        if cmd == "run":
            self._run()
            return True

        if cmd == "step":
            try:
                count = int(args[0]) if args else 1
            except ValueError:
                print("usage: :host step [N]")
                return True
            self._step(max(count, 1))
            return True

        if cmd == "reset":
            self.vm.reset()
            print("reset: pc=1, stack empty")
            return True

        if cmd == "check":
            out = io.StringIO()
            self.vm.handle_dot_command(".check", out)
            sys.stdout.write(out.getvalue())
            return True

        if cmd in ("quit", "exit"):
            print("bye.")
            raise SystemExit(0)

        if cmd in ("help", "?"):
            self._print_help()
            return True

        print(f"unknown host command: {cmd!r}")
        self._print_help()
        return True

    def _print_help(self) -> None:
        print("Host commands (prefix with :host):")
        print("  :host load \"file\"          - load a program (new session)")
        print("  :host run                  - run from pc to the end")
        print("  :host step [N]             - execute N instructions")
        print("  :host reset                - pc=1, empty stack")
        print("  :host check                - list decode errors of the program")
        print("  :host .stack/.pc/.program  - inspect the session")
        print("  :host .see N               - show how line N decodes")
        print("  :host quit                 - exit REPL")
        print("Other lines are executed immediately, e.g. 'push 3' or 'print'.")

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession)
    # ------------------------------------------------------------------

    def handle_line(self, line: str) -> None:
        if not line.strip():
            return
        if line.strip().startswith(":host"):
            self._handle_host_command(line)
            return
        self._execute_immediate(line)

    def run(self) -> None:
        """
        Boucle REPL interactive basée sur prompt_toolkit, avec complétion :
        - commandes :host ... et dot-commands
        - fichiers pour :host load
        - mnémoniques SML.
        """
        print("SML Host REPL")
        print("Type SML instructions to execute them on the session stack.")
        print("Use :host ... for host / dot-commands.  (:host help for help)")

        session = PromptSession(completer=SMLCompleter())
        while True:
            try:
                name = os.path.basename(self.filename) if self.filename else "-"
                line = session.prompt(f"[{name} pc={self.vm.pc}] sml> ")
            except EOFError:
                print("\nEOF -> quitting.")
                break
            except KeyboardInterrupt:
                print("\nKeyboardInterrupt (Ctrl-C). Use ':host quit' to exit.")
                continue
            try:
                self.handle_line(line)
            except SystemExit:
                return


class SMLCompleter(Completer):
    def __init__(self) -> None:
        self._paths = PathCompleter(expanduser=True)

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        stripped = text.lstrip()

        if stripped.startswith(":host"):
            after = stripped[len(":host"):].lstrip()
            parts = after.split()
            choices = HOST_CMDS + sorted(DOT_CMDS)
            if not after:
                for name in choices:
                    yield Completion(name, start_position=0)
                return
            if len(parts) == 1 and not after.endswith(" "):
                frag = parts[0]
                for name in choices:
                    if name.startswith(frag):
                        yield Completion(name, start_position=-len(frag))
                return
            if parts[0] == "load":
                yield from self._paths.get_completions(document, complete_event)
            return

        # mnémonique en début de ligne
        if " " in stripped:
            return
        for name in sorted(MNEMONICS):
            if name.startswith(stripped):
                yield Completion(name, start_position=-len(stripped))


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    repl = HostREPL()
    if argv:
        repl._load(argv[0])
    repl.run()


# ======================================================================
# Tests intégrés (python sml_host_repl.py --test)
# ======================================================================

import unittest
from contextlib import redirect_stdout
from prompt_toolkit.document import Document
from prompt_toolkit.completion import CompleteEvent


class TestHostREPL_Session(unittest.TestCase):
    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".sml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("push 5\npush 0\nifeq 5\npush 99\nprint\n")
        self.repl = HostREPL()

    def tearDown(self):
        os.unlink(self.path)

    def feed(self, *lines: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            for ln in lines:
                self.repl.handle_line(ln)
        return buf.getvalue()

    def test_load_and_run(self):
        out = self.feed(f':host load "{self.path}"', ":host run")
        self.assertIn("(5 lines)", out)
        self.assertIn("The stack: 5,", out)
        self.assertIn("program finished", out)

    def test_step_echoes_lines(self):
        out = self.feed(f':host load "{self.path}"', ":host step 3")
        self.assertIn("   3  ifeq 5", out)
        self.assertEqual(self.repl.vm.pc, 5)
        out = self.feed(":host .stack")
        self.assertIn("<1> 5", out)

    def test_reset(self):
        self.feed(f':host load "{self.path}"', ":host run", ":host reset")
        self.assertEqual(self.repl.vm.pc, 1)
        self.assertTrue(self.repl.vm.stack.is_empty())

    def test_load_missing_file(self):
        out = self.feed(":host load /no/such/file.sml")
        self.assertIn("Error opening file", out)


class TestHostREPL_Immediate(unittest.TestCase):
    def setUp(self):
        self.repl = HostREPL()

    def feed(self, *lines: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            for ln in lines:
                self.repl.handle_line(ln)
        return buf.getvalue()

    def test_immediate_instructions(self):
        out = self.feed("push 2", "dup", "add", "print")
        self.assertEqual(out, "The stack: 4,\n")

    def test_immediate_error_is_reported_not_raised(self):
        out = self.feed("pop")
        self.assertIn("error: Cannot pop from an empty stack", out)
        out = self.feed("push 1 2")
        self.assertIn("cannot have more than two tokens", out)

    def test_halted_session_refuses_run(self):
        self.repl.vm = HostedVM(self.repl.sink, config=self.repl.config)
        self.repl.vm.load(["pop"])
        out = self.feed(":host run", ":host run")
        self.assertIn("Line 1: Cannot pop from an empty stack", out)
        self.assertIn("halted", out)

    def test_halted_session_refuses_immediate_lines(self):
        self.repl.vm.load(["push 1", "pop", "pop"])
        out = self.feed(":host run", "jump 1")
        self.assertIn("Line 3: Cannot pop from an empty stack", out)
        self.assertIn("halted", out)
        self.assertTrue(self.repl.vm.halted)
        self.assertIsNotNone(self.repl.vm.last_error)
        self.feed(":host reset", "jump 1")
        self.assertEqual(self.repl.vm.pc, 1)
        self.assertFalse(self.repl.vm.halted)

    def test_unknown_and_quit(self):
        out = self.feed(":host frobnicate")
        self.assertIn("unknown host command", out)
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit):
                self.repl._handle_host_command(":host quit")


class TestSMLCompleter(unittest.TestCase):
    def complete(self, text: str) -> List[str]:
        doc = Document(text, len(text))
        return [c.text for c in SMLCompleter().get_completions(doc, CompleteEvent())]

    def test_host_commands(self):
        self.assertEqual(self.complete(":host st"), ["step"])
        self.assertIn(".stack", self.complete(":host .s"))

    def test_mnemonics(self):
        self.assertEqual(self.complete("pu"), ["push"])
        self.assertEqual(self.complete("push 1"), [])


if __name__ == "__main__":
    if "--test" in sys.argv:
        # Nettoie sys.argv pour unittest
        sys.argv = [sys.argv[0]]
        unittest.main()
    else:
        main()
