#!/usr/bin/env python3
# nforth_repl.py
#
# REPL pour nforth :
# - une seule VM, évaluation synchrone, une ligne = une unité d'évaluation
# - les lignes dont le premier mot est une dot-command (.stack, .see ...)
#   sont traitées par VM.handle_dot_command ; tout le reste va à la VM
# - une erreur est affichée ("Error: ...") et la session continue avec
#   l'état partiel laissé par la ligne fautive
#
# Options :
#   nforth                 -> REPL interactif (prompt_toolkit)
#   nforth -e "1 2 + ."    -> évalue puis quitte
#   nforth -f script.fs    -> exécute un fichier puis ouvre le REPL
#   nforth --test          -> tests intégrés

from __future__ import annotations

import argparse
import io
import sys
import unittest
from typing import Iterable, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from nforth_errors import ForthError
from nforth_vm_core import DOT_CMDS, VM


BANNER = 'Forth Interpreter Ready. Type "STOP" or .bye to exit.'


class NForthCompleter(Completer):
    """Complete dot-commands at line start, then dictionary and control words."""

    def __init__(self, vm: VM) -> None:
        self.vm = vm

    def get_completions(self, document, complete_event) -> Iterable[Completion]:
        text = document.text_before_cursor
        stripped = text.lstrip()

        # --- dot-commands, seulement en premier mot ---
        if stripped.startswith(".") and " " not in stripped:
            for dc in sorted(DOT_CMDS):
                if dc.startswith(stripped):
                    yield Completion(dc, start_position=-len(stripped))

        word_before = document.get_word_before_cursor(WORD=True)
        if not word_before:
            return

        prefix = word_before.upper()
        names = [w.name for w in self.vm.dict.all_words()] + self.vm.control_words()
        seen = set()
        for name in sorted(names):
            if name in seen:
                continue
            seen.add(name)
            if name.upper().startswith(prefix):
                yield Completion(name, start_position=-len(word_before))


class ForthREPL:
    """
    REPL texte synchrone par-dessus une VM nforth.

    - handle_line() : une ligne -> dot-command ou évaluation Forth
    - read_from()   : exécute un fichier ligne par ligne
    - run()         : boucle interactive prompt_toolkit
    """

    def __init__(self, vm: Optional[VM] = None) -> None:
        self.vm = vm if vm is not None else VM()
        self.errors = 0

    # ------------------------------------------------------------------
    # Utilitaires internes
    # ------------------------------------------------------------------

    @staticmethod
    def _write(text: str) -> None:
        if text:
            sys.stdout.write(text)
            sys.stdout.flush()

    def _send_line(self, line: str) -> None:
        out = io.StringIO()
        try:
            self.vm.interpret_line(line, out=out)
        except ForthError as e:
            # la sortie produite avant l'erreur reste visible
            self._write(out.getvalue())
            self.errors += 1
            print(f"Error: {e}")
        else:
            self._write(out.getvalue())

    def _run_dot_command(self, line: str) -> None:
        out = io.StringIO()
        self.vm.handle_dot_command(line, out)
        self._write(out.getvalue())

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    def handle_line(self, line: str) -> bool:
        """Process one line. Returns False once the session has ended."""
        stripped = line.strip()
        if stripped:
            if stripped.split()[0] in DOT_CMDS:
                self._run_dot_command(stripped)
            else:
                self._send_line(stripped)
        return self.vm.alive

    def read_from(self, filename: str) -> None:
        try:
            with open(filename, "r", encoding="utf-8") as f:
                for raw in f:
                    ln = raw.rstrip("\n")
                    # ignore lignes vides et commentaires shell-style
                    if not ln.strip() or ln.lstrip().startswith("#"):
                        continue
                    if not self.handle_line(ln):
                        break
        except OSError as e:
            self.errors += 1
            print(f"read-from: cannot open {filename!r}: {e}")

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession)
    # ------------------------------------------------------------------

    def run(self, *, banner: bool = True) -> None:
        if banner:
            print(BANNER)
        session = PromptSession(completer=NForthCompleter(self.vm))
        while self.vm.alive:
            try:
                line = session.prompt("> ")
            except EOFError:
                print("\nEOF -> quitting.")
                break
            except KeyboardInterrupt:
                print("\nKeyboardInterrupt (Ctrl-C). Type STOP or .bye to exit.")
                continue
            self.handle_line(line)
        print("bye.")


def run_tests() -> int:
    import nforth_values
    import nforth_vm_core

    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for mod in (nforth_values, nforth_vm_core, sys.modules[__name__]):
        suite.addTests(loader.loadTestsFromModule(mod))
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return 0 if result.wasSuccessful() else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="nforth",
        description="Interactive Forth-family evaluator with calendar arithmetic.",
    )
    parser.add_argument("--test", action="store_true", help="run the embedded test suites")
    parser.add_argument("-e", "--eval", action="append", default=[], metavar="LINE",
                        help="evaluate LINE and exit (repeatable)")
    parser.add_argument("-f", "--file", metavar="PATH", help="run a script before the prompt")
    parser.add_argument("--no-banner", action="store_true", help="do not print the greeting")
    args = parser.parse_args(argv)

    if args.test:
        return run_tests()

    repl = ForthREPL()
    if args.file:
        repl.read_from(args.file)
    if args.eval:
        for line in args.eval:
            if not repl.handle_line(line):
                break
        return 1 if repl.errors else 0
    if repl.vm.alive:
        repl.run(banner=not args.no_banner)
    return 0


# ======================================================================
# Tests intégrés (python nforth_repl.py --test)
# ======================================================================

import os
import tempfile
from contextlib import redirect_stdout


class TestForthREPL(unittest.TestCase):
    def setUp(self):
        # On ne lance pas repl.run(), on utilise uniquement l'API interne
        self.repl = ForthREPL()

    def run_line(self, line: str) -> str:
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.handle_line(line)
        return buf.getvalue()

    def test_forth_line_output(self):
        self.assertEqual(self.run_line("3 4 + ."), "7\n")
        self.assertEqual(self.run_line("   "), "")

    def test_error_is_reported_and_session_continues(self):
        out = self.run_line("1 . 2 +")
        self.assertEqual(out, "1\nError: data stack underflow\n")
        self.assertEqual(self.repl.errors, 1)
        self.assertEqual(self.repl.vm.D, [])
        self.assertEqual(self.run_line("5 ."), "5\n")

    def test_partial_state_survives_error(self):
        self.run_line("1 2 NOPE")
        self.assertEqual(self.run_line(".stack"), "<2> 1 2\n")
        self.run_line(".reset")
        self.assertEqual(self.run_line(".S"), "<0>\n")

    def test_dot_s_is_a_forth_word(self):
        self.run_line("1 2")
        self.assertEqual(self.run_line(".S"), "<2> 1 2\n")

    def test_stop_and_bye_end_session(self):
        self.assertFalse(self.repl.handle_line("STOP"))
        other = ForthREPL()
        with redirect_stdout(io.StringIO()):
            self.assertFalse(other.handle_line(".bye"))

    def test_read_from_file(self):
        with tempfile.TemporaryDirectory() as d:
            fn = os.path.join(d, "script.fs")
            with open(fn, "w", encoding="utf-8") as f:
                f.write("# commentaire\n: SQ DUP * ;\n\n4 SQ .\n.stack\n")
            buf = io.StringIO()
            with redirect_stdout(buf):
                self.repl.read_from(fn)
        self.assertEqual(buf.getvalue(), "16\n<0>\n")

    def test_read_from_missing_file(self):
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.repl.read_from("/nonexistent/nope.fs")
        self.assertIn("cannot open", buf.getvalue())

    def test_duration_overflow_is_reported(self):
        out = self.run_line("999999999 DAYS> DUP +")
        self.assertTrue(out.startswith("Error: "), out)
        self.assertEqual(self.repl.errors, 1)
        self.assertEqual(self.run_line("1 ."), "1\n")

    def test_suite_runners_not_collected(self):
        import nforth_values
        import nforth_vm_core
        self.assertFalse(nforth_values.test_all.__test__)
        self.assertFalse(nforth_vm_core.test_all.__test__)

    def test_main_eval(self):
        buf = io.StringIO()
        with redirect_stdout(buf):
            rc = main(["-e", ": DBL 2 * ;", "-e", "21 DBL ."])
        self.assertEqual(rc, 0)
        self.assertEqual(buf.getvalue(), "42\n")
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main(["-e", "NOPE"]), 1)


class TestCompleter(unittest.TestCase):
    def setUp(self):
        self.vm = VM()
        self.completer = NForthCompleter(self.vm)

    def complete(self, text: str) -> List[str]:
        return [c.text for c in self.completer.get_completions(Document(text), None)]

    def test_words_case_insensitive(self):
        self.assertIn("DUP", self.complete("1 du"))
        self.assertIn("REPEAT", self.complete("BEGIN rep"))

    def test_user_words(self):
        self.vm.interpret_line(": SQUARE DUP * ;")
        self.assertIn("SQUARE", self.complete("3 SQ"))

    def test_dot_commands_at_line_start(self):
        self.assertIn(".stack", self.complete(".st"))
        self.assertNotIn(".stack", self.complete("1 .st"))


if __name__ == "__main__":
    sys.exit(main())
