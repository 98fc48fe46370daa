#!/usr/bin/env python3
# nforth_vm_core.py
#
# Noyau nforth, mono-VM, sans compilation :
# - tokenizer (chaînes "..." conservées avec leurs guillemets, sans échappement)
# - dictionnaire : primitives Python + définitions utilisateur (séquences de tokens)
# - piles D (données), R (retour), L (contextes DO), B (marques BEGIN)
# - contrôle structuré par balayage de la séquence de tokens ;
#   les cibles de saut sont mémorisées par séquence (Body)
# - sortie texte centralisée via VM.emit(text)
#
# Tests intégrés :
#   python nforth_vm_core.py

from __future__ import annotations

import io
import sys
import unittest
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from nforth_errors import (
    StackUnderflowError, UnknownWordError, UnmatchedControlError,
    TypeMismatchError, DivideByZeroError, UnexpectedEndError, RecursionDepthError,
)
from nforth_values import (
    ValueKind, Moment, kind_of, format_value, parse_literal,
    add, subtract, multiply, divide, modulo, divmod_, compare, equals,
    as_number, as_int, is_truthy, flag, duration_to_days, days_to_duration,
)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def tokenize(line: str) -> List[str]:
    """Split on whitespace, keeping "..." spans (quotes included) whole.

    An unterminated quote swallows the rest of the line into one token.
    """
    out: List[str] = []
    buf: List[str] = []
    in_quote = False
    for c in line.replace("\t", " "):
        if c == '"':
            in_quote = not in_quote
            buf.append(c)
            if not in_quote:
                out.append("".join(buf)); buf = []
            continue
        if not in_quote and c.isspace():
            if buf:
                out.append("".join(buf)); buf = []
        else:
            buf.append(c)
    if buf:
        out.append("".join(buf))
    return out


# ---------------------------------------------------------------------------
# Piles
# ---------------------------------------------------------------------------

class Stack(list):
    """LIFO list; pop/peek on a too-shallow stack raise StackUnderflowError."""

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name

    def pop(self) -> Any:
        if not self:
            raise StackUnderflowError(f"{self.name} stack underflow")
        return super().pop()

    def peek(self, depth: int = 0) -> Any:
        if depth >= len(self):
            raise StackUnderflowError(f"{self.name} stack underflow")
        return self[-1 - depth]


@dataclass
class LoopContext:
    index: int
    limit: int
    resume: int


# ---------------------------------------------------------------------------
# Résolution du contrôle
# ---------------------------------------------------------------------------

# mot -> (ouvrant, fermants, intermédiaire accepté à profondeur 1)
_SCANS: Dict[str, Tuple[str, Tuple[str, ...], Optional[str]]] = {
    "IF":    ("IF", ("THEN",), "ELSE"),
    "ELSE":  ("IF", ("THEN",), None),
    "LEAVE": ("DO", ("LOOP", "+LOOP"), None),
    "WHILE": ("WHILE", ("REPEAT",), None),
}


class Body:
    """A token sequence and the jump targets resolved in it so far.

    Targets depend only on the tokens, so each control site is scanned at
    most once, however many times a loop runs over it. Scanning is lazy:
    a malformed construct only fails when execution reaches it.
    """

    def __init__(self, tokens: Sequence[str]) -> None:
        self.tokens: Tuple[str, ...] = tuple(tokens)
        self._upper: Tuple[str, ...] = tuple(t.upper() for t in self.tokens)
        self._targets: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self.tokens)

    def resolve(self, ip: int) -> int:
        target = self._targets.get(ip)
        if target is None:
            target = self._targets[ip] = self._scan(ip)
        return target

    def _scan(self, ip: int) -> int:
        opener, closers, middle = _SCANS[self._upper[ip]]
        depth = 1
        for i in range(ip + 1, len(self._upper)):
            t = self._upper[i]
            if t == opener:
                depth += 1
            elif t == middle and depth == 1:
                return i
            elif t in closers:
                depth -= 1
                if depth == 0:
                    return i
        raise UnmatchedControlError(f"{self.tokens[ip]} without matching {'/'.join(closers)}")


# ---------------------------------------------------------------------------
# Dictionnaire
# ---------------------------------------------------------------------------

class CodeClass(Enum):
    PRIMITIVE = "PRIMITIVE"
    DOCOL     = "DOCOL"


@dataclass
class Word:
    name: str
    code_class: CodeClass
    prim: Optional[Callable[["VM"], None]] = None
    body: Optional[Body] = None
    doc: str = ""

    def execute(self, vm: "VM") -> None:
        if self.code_class is CodeClass.PRIMITIVE:
            self.prim(vm)
        else:
            vm.enter_body(self.body)

    def disasm(self) -> str:
        if self.code_class is CodeClass.DOCOL:
            return f": {self.name} {' '.join(self.body.tokens)} ;"
        return f"primitive {self.name} {self.doc}".rstrip()

    # constructors
    @staticmethod
    def primitive(name: str, prim: Callable[["VM"], None], *, doc: str = "") -> "Word":
        return Word(name, CodeClass.PRIMITIVE, prim=prim, doc=doc)

    @staticmethod
    def colon(name: str, tokens: Sequence[str]) -> "Word":
        return Word(name, CodeClass.DOCOL, body=Body(tokens))


class WordsDictionary:
    """Native and user words, case-insensitive; user words shadow natives."""

    def __init__(self) -> None:
        self._natives: Dict[str, Word] = {}
        self._colons: Dict[str, Word] = {}

    @staticmethod
    def _key(name: str) -> str:
        return name.upper()

    def add_primitive(self, name: str, prim, *, doc: str = "") -> Word:
        w = Word.primitive(name, prim, doc=doc)
        self._natives[self._key(name)] = w
        return w

    def add_colon(self, name: str, tokens: Sequence[str]) -> Word:
        w = Word.colon(name, tokens)
        self._colons[self._key(name)] = w
        return w

    def find_colon(self, name: str) -> Optional[Word]:
        return self._colons.get(self._key(name))

    def find_native(self, name: str) -> Optional[Word]:
        return self._natives.get(self._key(name))

    def find(self, name: str) -> Optional[Word]:
        return self.find_colon(name) or self.find_native(name)

    def forget(self, name: str) -> Word:
        w = self._colons.pop(self._key(name), None)
        if w is None:
            raise UnknownWordError(f"FORGET: no definition named {name}")
        return w

    def all_words(self) -> List[Word]:
        shadowed = [w for k, w in self._natives.items() if k not in self._colons]
        return list(self._colons.values()) + shadowed


# ------------------------------ VM Core --------------------------------------

# REPL dot-commands (single source of truth)
DOT_CMDS = {".bye", ".dict", ".help", ".reset", ".rstack", ".see", ".stack"}


class VM:

    def __init__(self):
        self.D = Stack("data")
        self.R = Stack("return")
        self.L = Stack("loop")
        self.B = Stack("begin")
        self.dict = WordsDictionary()
        # Sortie par défaut
        self.out = io.StringIO()
        # STOP / .bye passent alive à False ; la boucle d'évaluation s'arrête
        self.alive = True

        # runtime
        self._ip_stack: List[Tuple[Body, int]] = []
        self._cur_body: Optional[Body] = None
        self._ip: int = 0

        self._control: Dict[str, Callable[[], None]] = {
            "IF": self._ctl_if,
            "ELSE": self._ctl_else,
            "THEN": lambda: None,
            "DO": self._ctl_do,
            "LOOP": self._ctl_loop,
            "+LOOP": self._ctl_plus_loop,
            "I": lambda: self.D.append(float(self.L.peek().index)),
            "J": lambda: self.D.append(float(self.L.peek(1).index)),
            "LEAVE": self._ctl_leave,
            "BEGIN": lambda: self.B.append(self._ip),
            "UNTIL": self._ctl_until,
            "WHILE": self._ctl_while,
            "REPEAT": self._ctl_repeat,
        }
        self._install_core()

    # --- token execution loop ---
    def enter_body(self, body: Body) -> None:
        if self._cur_body is not None:
            self._ip_stack.append((self._cur_body, self._ip))
        self._cur_body = body
        self._ip = 0
        try:
            self._run_body()
        finally:
            if self._ip_stack:
                self._cur_body, self._ip = self._ip_stack.pop()
            else:
                self._cur_body = None
                self._ip = 0

    def _run_body(self) -> None:
        """Instruction-pointer loop over the current body.

        Every step is followed by ``ip += 1``; a branch therefore sets the
        pointer to the token just before the one where execution resumes.
        """
        body = self._cur_body
        while self._ip < len(body) and self.alive:
            self._step(body.tokens[self._ip])
            self._ip += 1

    def _step(self, tok: str) -> None:
        if tok == ":":
            self._compile_definition()
            return
        w = self.dict.find_colon(tok)
        if w is not None:
            w.execute(self)
            return
        ctl = self._control.get(tok.upper())
        if ctl is not None:
            ctl()
            return
        val = parse_literal(tok)
        if val is not None:
            self.D.append(val)
            return
        w = self.dict.find_native(tok)
        if w is None:
            raise UnknownWordError(f"Unknown token: {tok}")
        w.execute(self)

    def next_token_from_input(self, who: str) -> str:
        body = self._cur_body
        if body is None or self._ip + 1 >= len(body):
            raise UnexpectedEndError(f"{who}: unexpected end of input")
        self._ip += 1
        return body.tokens[self._ip]

    def _compile_definition(self) -> None:
        name = self.next_token_from_input(":")
        tokens: List[str] = []
        while True:
            tok = self.next_token_from_input(f": {name}")
            if tok == ";":
                break
            tokens.append(tok)
        self.dict.add_colon(name, tokens)

    # --- control words ---
    # IF et WHILE résolvent leur cible même quand le drapeau est vrai :
    # un IF sans THEN échoue quel que soit le drapeau (résultat mémorisé).
    def _ctl_if(self) -> None:
        cond = is_truthy(self.D.pop(), "IF")
        target = self._cur_body.resolve(self._ip)
        if not cond:
            self._ip = target

    def _ctl_else(self) -> None:
        self._ip = self._cur_body.resolve(self._ip)

    def _ctl_do(self) -> None:
        start = as_int(self.D.pop(), "DO")
        limit = as_int(self.D.pop(), "DO")
        self.L.append(LoopContext(start, limit, self._ip))

    def _ctl_loop(self) -> None:
        ctx = self.L.peek()
        ctx.index += 1
        if ctx.index < ctx.limit:
            self._ip = ctx.resume
        else:
            self.L.pop()

    def _ctl_plus_loop(self) -> None:
        ctx = self.L.peek()
        n = as_int(self.D.pop(), "+LOOP")
        ctx.index += n
        if (n > 0 and ctx.index < ctx.limit) or (n < 0 and ctx.index > ctx.limit):
            self._ip = ctx.resume
        else:
            self.L.pop()

    def _ctl_leave(self) -> None:
        self.L.pop()
        self._ip = self._cur_body.resolve(self._ip)

    def _ctl_until(self) -> None:
        if is_truthy(self.D.pop(), "UNTIL"):
            self.B.pop()
        else:
            self._ip = self.B.peek()

    def _ctl_while(self) -> None:
        cond = is_truthy(self.D.pop(), "WHILE")
        target = self._cur_body.resolve(self._ip)
        if not cond:
            self.B.pop()
            self._ip = target

    def _ctl_repeat(self) -> None:
        self._ip = self.B.peek()

    # --- Core primitives ---
    def _install_core(self) -> None:
            W = self.dict
            def addp(name, prim, *, doc=""):
                return W.add_primitive(name, prim, doc=doc)
            def binop(fn):
                return lambda vm: (lambda b, a: vm.D.append(fn(a, b)))(vm.D.pop(), vm.D.pop())
            def unop(name, fn):
                return lambda vm: vm.D.append(fn(as_number(vm.D.pop(), name)))

            # Stack basics
            addp("DROP", lambda vm: vm.D.pop(), doc="( x -- )")
            addp("DUP",  lambda vm: vm.D.append(vm.D.peek()), doc="( x -- x x )")
            def prim_SWAP(vm): a=vm.D.pop(); b=vm.D.pop(); vm.D.append(a); vm.D.append(b)
            addp("SWAP", prim_SWAP, doc="( a b -- b a )")
            addp("OVER", lambda vm: vm.D.append(vm.D.peek(1)), doc="( a b -- a b a )")
            def prim_ROT(vm): a=vm.D.pop(); b=vm.D.pop(); c=vm.D.pop(); vm.D.extend([b,a,c])
            addp("ROT", prim_ROT, doc="( a b c -- b c a )")
            def prim_NIP(vm):
                x2 = vm.D.pop()
                vm.D.pop()
                vm.D.append(x2)
            addp("NIP", prim_NIP, doc="( x1 x2 -- x2 )")
            def prim_QDUP(vm):
                x = vm.D.peek()
                if is_truthy(x, "?DUP"):
                    vm.D.append(x)
            addp("?DUP", prim_QDUP, doc="( x -- x x | 0 )")
            def prim_2DROP(vm): vm.D.pop(); vm.D.pop()
            def prim_2DUP(vm): a=vm.D.peek(1); b=vm.D.peek(); vm.D.extend([a,b])
            addp("2DROP", prim_2DROP, doc="( a b -- )")
            addp("2DUP",  prim_2DUP,  doc="( a b -- a b a b )")
            addp("DEPTH", lambda vm: vm.D.append(float(len(vm.D))), doc="( -- n )")
            addp("CLEAR", lambda vm: vm.D.clear(), doc="( ... -- )")

            # Return stack
            addp(">R", lambda vm: vm.R.append(vm.D.pop()), doc="( x -- ) ( R: -- x )")
            addp("R>", lambda vm: vm.D.append(vm.R.pop()), doc="( -- x ) ( R: x -- )")
            addp("R@", lambda vm: vm.D.append(vm.R.peek()), doc="( -- x ) ( R: x -- x )")

            # Arithmetic (+ et - dispatchent sur les tags)
            addp("+", binop(add), doc="( a b -- a+b )")
            addp("-", binop(subtract), doc="( a b -- a-b )")
            addp("*", binop(multiply), doc="( a b -- a*b )")
            addp("/", binop(divide), doc="( a b -- a/b )")
            addp("MOD", binop(modulo), doc="( a b -- a mod b )")
            def prim_divmod(vm):
                b = vm.D.pop(); a = vm.D.pop()
                q, r = divmod_(a, b)
                vm.D.extend([r, q])
            addp("/MOD", prim_divmod, doc="( a b -- rem quot )")
            addp("NEGATE", unop("NEGATE", lambda n: -n), doc="( n -- -n )")
            addp("ABS", unop("ABS", abs), doc="( n -- |n| )")
            addp("1+", unop("1+", lambda n: n + 1), doc="( n -- n+1 )")
            addp("1-", unop("1-", lambda n: n - 1), doc="( n -- n-1 )")
            addp("MIN", binop(lambda a, b: min(as_number(a, "MIN"), as_number(b, "MIN"))), doc="( a b -- min )")
            addp("MAX", binop(lambda a, b: max(as_number(a, "MAX"), as_number(b, "MAX"))), doc="( a b -- max )")

            # Logic / comparison (true = -1, false = 0)
            addp("=",  binop(lambda a, b: flag(equals(a, b))), doc="( a b -- flag )")
            addp("<>", binop(lambda a, b: flag(not equals(a, b))), doc="( a b -- flag )")
            addp("<",  binop(lambda a, b: flag(compare(a, b, "<") < 0)), doc="( a b -- flag )")
            addp(">",  binop(lambda a, b: flag(compare(a, b, ">") > 0)), doc="( a b -- flag )")
            addp("<=", binop(lambda a, b: flag(compare(a, b, "<=") <= 0)), doc="( a b -- flag )")
            addp(">=", binop(lambda a, b: flag(compare(a, b, ">=") >= 0)), doc="( a b -- flag )")
            addp("0=", unop("0=", lambda n: flag(n == 0)), doc="( n -- flag )")
            addp("0<", unop("0<", lambda n: flag(n < 0)), doc="( n -- flag )")
            addp("0>", unop("0>", lambda n: flag(n > 0)), doc="( n -- flag )")
            addp("AND", binop(lambda a, b: float(as_int(a, "AND") & as_int(b, "AND"))), doc="( a b -- a&b )")
            addp("OR",  binop(lambda a, b: float(as_int(a, "OR") | as_int(b, "OR"))), doc="( a b -- a|b )")
            addp("XOR", binop(lambda a, b: float(as_int(a, "XOR") ^ as_int(b, "XOR"))), doc="( a b -- a^b )")
            addp("INVERT", lambda vm: vm.D.append(float(~as_int(vm.D.pop(), "INVERT"))), doc="( x -- ~x )")

            # Output & debug
            addp(".", lambda vm: vm.emit_line(format_value(vm.D.pop())), doc="( x -- ) print")
            addp(".S", lambda vm: vm.emit_line(vm.format_stack(vm.D)), doc="( -- )")
            addp(".R", lambda vm: vm.emit_line(vm.format_stack(vm.R)), doc="( -- )")
            addp("CR", lambda vm: vm.emit("\n"), doc="( -- ) carriage return")
            def prim_TYPE(vm):
                s = vm.D.pop()
                if kind_of(s) is not ValueKind.TEXT:
                    raise TypeMismatchError(f"TYPE: expects TEXT, got {kind_of(s).value}")
                vm.emit(s)
            addp("TYPE", prim_TYPE, doc="( str -- ) print without newline")

            # Temps
            addp("NOW", lambda vm: vm.D.append(Moment(datetime.now())), doc="( -- moment )")
            def prim_TODAY(vm):
                vm.D.append(Moment(datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)))
            addp("TODAY", prim_TODAY, doc="( -- moment ) today at 00:00:00")
            addp(">DAYS", lambda vm: vm.D.append(duration_to_days(vm.D.pop())), doc="( duration -- n )")
            addp("DAYS>", lambda vm: vm.D.append(days_to_duration(vm.D.pop())), doc="( n -- duration )")

            # Dictionary maintenance
            def prim_WORDS(vm):
                vm.emit_line(" ".join(sorted(w.name for w in vm.dict.all_words())))
            addp("WORDS", prim_WORDS, doc="( -- ) list words")
            def prim_FORGET(vm):
                name = vm.next_token_from_input("FORGET")
                vm.dict.forget(name)
            addp("FORGET", prim_FORGET, doc="( <name> -- ) remove a user definition")

            # Session
            def prim_STOP(vm):
                vm.alive = False
            addp("STOP", prim_STOP, doc="( -- ) end the session")
            addp("END", lambda vm: None, doc="( -- ) no-op")

    # --- Output ---
    def emit(self, text: str) -> None:
        """Point central de sortie texte."""
        self.out.write(text)

    def emit_line(self, text: str) -> None:
        self.emit(text + "\n")

    @staticmethod
    def format_stack(stack: Sequence[Any]) -> str:
        return f"<{len(stack)}>" + "".join(" " + format_value(x) for x in stack)

    # --- Interpreter entry points ---
    def evaluate(self, tokens: Sequence[str]) -> None:
        self.enter_body(tokens if isinstance(tokens, Body) else Body(tokens))

    def interpret_line(self, line: str, *, out: Optional[Any] = None) -> str:
            """Evaluate one line; return the text it emitted.

            Errors propagate to the caller; stacks and dictionary keep
            whatever state the line reached before failing.
            """
            old_out = self.out
            local_buf = io.StringIO()
            target = out if out is not None else local_buf
            start_len = len(target.getvalue()) if hasattr(target, "getvalue") else None
            self.out = target
            try:
                self.evaluate(tokenize(line))
            except RecursionError as e:
                raise RecursionDepthError("word expansion nested too deeply") from e
            finally:
                self.out = old_out
            if start_len is not None:
                return target.getvalue()[start_len:]
            return ""

    def control_words(self) -> List[str]:
        return sorted(self._control)

    def reset(self) -> None:
        for s in (self.D, self.R, self.L, self.B):
            s.clear()

    # --- Dot-commands via dispatch table ---
    def _dotcmd_dispatch(self):
            return {
                ".help": self._dot_help,
                ".stack": self._dot_stack,
                ".rstack": self._dot_rstack,
                ".dict": self._dot_dict,
                ".see": self._dot_see,
                ".reset": self._dot_reset,
                ".bye": self._dot_bye,
            }

    def _dot_help(self, args, out):
            out.write(".stack .rstack .dict [filter] .see <w> .reset .bye\n")

    def _dot_stack(self, args, out):
            out.write(self.format_stack(self.D) + "\n")

    def _dot_rstack(self, args, out):
            out.write(self.format_stack(self.R) + "\n")

    def _dot_dict(self, args, out):
            names = [w.name for w in self.dict.all_words()]
            filt = args[0] if args else None
            if filt:
                names = [n for n in names if filt.lower() in n.lower()]
            out.write(" ".join(sorted(names)) + "\n")

    def _dot_see(self, args, out):
            if not args:
                out.write("unknown: \n"); return
            w = self.dict.find(args[0])
            if not w:
                out.write(f"unknown: {args[0]}\n"); return
            out.write(w.disasm() + "\n")

    def _dot_reset(self, args, out):
            self.reset()
            out.write("stacks cleared\n")

    def _dot_bye(self, args, out):
            self.alive = False

    def handle_dot_command(self, line: str, out):
            parts = line.split()
            cmd, args = parts[0], parts[1:]
            h = self._dotcmd_dispatch().get(cmd)
            if not h:
                out.write(f"unknown dot-cmd: {cmd}\n")
                return
            h(args, out)


####################################################################
# Tests

class TestTokenizer(unittest.TestCase):
    def test_whitespace_and_tabs(self):
        self.assertEqual(tokenize("1  2\t+\n."), ["1", "2", "+", "."])
        self.assertEqual(tokenize("   "), [])

    def test_quoted_spans(self):
        self.assertEqual(tokenize('1 "a  b" 2'), ["1", '"a  b"', "2"])
        self.assertEqual(tokenize('"x""y"'), ['"x"', '"y"'])
        self.assertEqual(tokenize('ab"c d" e'), ['ab"c d"', "e"])

    def test_unterminated_quote_absorbs_rest(self):
        self.assertEqual(tokenize('1 "open quote  x'), ["1", '"open quote  x'])


class TestStacksAndDictionary(unittest.TestCase):
    def test_stack_underflow(self):
        s = Stack("data")
        with self.assertRaises(StackUnderflowError):
            s.pop()
        s.append(1.0)
        self.assertEqual(s.peek(), 1.0)
        with self.assertRaises(StackUnderflowError):
            s.peek(1)

    def test_case_insensitive_and_shadowing(self):
        d = WordsDictionary()
        d.add_primitive("DUP", lambda vm: None)
        self.assertIs(d.find("dup").code_class, CodeClass.PRIMITIVE)
        d.add_colon("Dup", ["1"])
        self.assertIs(d.find("DUP").code_class, CodeClass.DOCOL)
        self.assertEqual([w.name for w in d.all_words()], ["Dup"])
        d.forget("dUP")
        self.assertIs(d.find("DUP").code_class, CodeClass.PRIMITIVE)
        with self.assertRaises(UnknownWordError):
            d.forget("DUP")

    def test_body_scans_are_memoized(self):
        b = Body(tokenize("0 IF 1 ELSE 2 THEN"))
        self.assertEqual(b.resolve(1), 3)
        self.assertEqual(b._targets, {1: 3})
        self.assertEqual(b.resolve(3), 5)
        with self.assertRaises(UnmatchedControlError):
            Body(["IF", "1"]).resolve(0)


class TestForthVM(unittest.TestCase):
    def setUp(self) -> None:
        self.vm = VM()
        self.out = io.StringIO()

    def feed(self, src: str) -> str:
        return self.vm.interpret_line(src, out=self.out)

    def lines(self, src: str) -> List[str]:
        return self.feed(src).split()

    def test_sequential(self):
        self.feed("3 4 +")
        self.assertEqual(self.vm.D, [7.0])

    def test_arith_and_logic(self):
        out = self.lines("1 2 + . 5 2 - . 6 3 * . 7 2 / . 7 3 MOD .")
        self.assertEqual(out, ["3", "3", "18", "3.5", "1"])
        self.feed("CLEAR 7 3 /MOD")
        self.assertEqual(self.vm.D, [1.0, 2.0])
        out = self.lines("CLEAR 0 0= . -1 0< . 3 5 < . 5 3 > . 4 4 = . 4 5 <> . 6 3 AND . 2 INVERT .")
        self.assertEqual(out, ["-1", "-1", "-1", "-1", "-1", "-1", "2", "-3"])

    def test_stack_words(self):
        self.feed("1 2 SWAP OVER ROT")
        self.assertEqual(self.vm.D, [1.0, 2.0, 2.0])
        self.feed("CLEAR 1 2 2DUP NIP DEPTH")
        self.assertEqual(self.vm.D, [1.0, 2.0, 2.0, 3.0])
        self.feed("CLEAR 0 ?DUP 3 ?DUP")
        self.assertEqual(self.vm.D, [0.0, 3.0, 3.0])

    def test_return_stack(self):
        self.feed("5 >R 1 R@ R> +")
        self.assertEqual(self.vm.D, [1.0, 10.0])
        self.assertEqual(self.vm.R, [])
        with self.assertRaises(StackUnderflowError):
            self.feed("R>")
        self.assertEqual(self.feed("7 >R 8 >R .R"), "<2> 7 8\n")
        self.assertEqual(VM().interpret_line(".R"), "<0>\n")

    def test_dot_s(self):
        self.assertEqual(self.feed('1 "two" 2021-01-02 .S'), "<3> 1 two 2021-01-02 00:00:00\n")
        self.assertEqual(VM().interpret_line(".S"), "<0>\n")

    def test_if_else_then(self):
        self.assertEqual(self.feed("1 IF 10 ELSE 20 THEN ."), "10\n")
        self.assertEqual(self.feed("0 IF 10 ELSE 20 THEN ."), "20\n")
        self.assertEqual(self.feed("0 IF 10 THEN 30 ."), "30\n")
        self.assertEqual(self.vm.D, [])

    def test_nested_if(self):
        self.assertEqual(self.feed("0 IF 1 IF 2 THEN ELSE 3 THEN ."), "3\n")
        self.assertEqual(self.feed("1 IF 0 IF 2 ELSE 4 THEN ELSE 3 THEN ."), "4\n")
        self.assertEqual(self.feed("1 if 5 else 6 then ."), "5\n")

    def test_unmatched_if(self):
        with self.assertRaises(UnmatchedControlError):
            self.feed("5 IF .")
        # le drapeau a été consommé, pas de retour arrière
        self.assertEqual(self.vm.D, [])
        with self.assertRaises(UnmatchedControlError):
            self.feed("1 IF 7 .")
        self.assertEqual(self.vm.D, [])
        with self.assertRaises(UnmatchedControlError):
            self.feed("1 IF 1 ELSE 2")

    def test_do_loop(self):
        self.assertEqual(self.lines("5 0 DO I . LOOP"), ["0", "1", "2", "3", "4"])
        self.assertEqual(self.vm.L, [])

    def test_do_loop_runs_body_once_when_start_reaches_limit(self):
        self.assertEqual(self.lines("0 0 DO I . LOOP"), ["0"])

    def test_plus_loop(self):
        self.assertEqual(self.lines("0 5 DO I . -1 +LOOP"), ["5", "4", "3", "2", "1"])
        self.assertEqual(self.lines("10 0 DO I . 3 +LOOP"), ["0", "3", "6", "9"])
        self.assertEqual(self.lines("10 0 DO I . 0 +LOOP"), ["0"])
        self.assertEqual(self.vm.L, [])

    def test_nested_loops_i_j(self):
        self.assertEqual(self.lines("3 1 DO 3 1 DO J I * . LOOP LOOP"), ["1", "2", "2", "4"])
        with self.assertRaises(StackUnderflowError):
            self.feed("2 0 DO J LOOP")

    def test_leave(self):
        self.assertEqual(self.lines("10 0 DO I DUP . 3 = IF LEAVE THEN LOOP 99 ."),
                         ["0", "1", "2", "3", "99"])
        self.assertEqual(self.vm.L, [])
        self.assertEqual(self.vm.D, [])

    def test_leave_inner_loop_only(self):
        out = self.lines("2 0 DO 5 0 DO I 1 = IF LEAVE THEN J . LOOP LOOP")
        self.assertEqual(out, ["0", "1"])
        self.assertEqual(self.vm.L, [])

    def test_loop_without_do(self):
        with self.assertRaises(StackUnderflowError):
            self.feed("LOOP")
        with self.assertRaises(StackUnderflowError):
            self.feed("1 +LOOP")
        with self.assertRaises(StackUnderflowError):
            self.feed("I")

    def test_begin_until(self):
        self.assertEqual(self.lines("0 BEGIN 1 + DUP . DUP 3 = UNTIL"), ["1", "2", "3"])
        self.assertEqual(self.vm.D, [3.0])
        self.assertEqual(self.vm.B, [])

    def test_begin_while_repeat(self):
        src = """
        : SUMTO 0 SWAP BEGIN DUP 0> WHILE SWAP OVER + SWAP 1- REPEAT DROP ;
        5 SUMTO .
        """
        self.assertEqual(self.feed(src), "15\n")
        self.assertEqual(self.vm.B, [])

    def test_nested_while_repeat(self):
        src = "2 BEGIN DUP WHILE 3 BEGIN DUP WHILE DUP . 1- REPEAT DROP 1- REPEAT DROP"
        self.assertEqual(self.lines(src), ["3", "2", "1", "3", "2", "1"])
        self.assertEqual(self.vm.D, [])
        self.assertEqual(self.vm.B, [])

    def test_until_nested_in_while(self):
        src = "2 BEGIN DUP WHILE 0 BEGIN 1+ DUP 2 = UNTIL . 1- REPEAT DROP"
        self.assertEqual(self.lines(src), ["2", "2"])
        self.assertEqual(self.vm.B, [])

    def test_repeat_without_begin(self):
        with self.assertRaises(StackUnderflowError):
            self.feed("REPEAT")
        with self.assertRaises(UnmatchedControlError):
            self.feed("BEGIN 0 WHILE")

    def test_colon_definitions(self):
        self.assertEqual(self.feed(": SQR DUP * ; 7 SQR ."), "49\n")
        src = ": FACT DUP 1 > IF DUP 1- FACT * ELSE DROP 1 THEN ; 5 FACT ."
        self.assertEqual(self.feed(src), "120\n")
        self.assertEqual(self.feed(": COUNT3 3 0 DO I . LOOP ; COUNT3 COUNT3"),
                         "0\n1\n2\n0\n1\n2\n")

    def test_word_side_effects_are_shared(self):
        self.feed(": PUSH2 1 2 ; PUSH2 +")
        self.assertEqual(self.vm.D, [3.0])

    def test_redefine_and_forget(self):
        self.assertEqual(self.feed(": FOO 1 ; : FOO 2 ; FOO ."), "2\n")
        self.assertEqual(self.feed(": foo 3 ; FOO ."), "3\n")
        self.feed("FORGET FOO")
        with self.assertRaises(UnknownWordError):
            self.feed("FOO")
        with self.assertRaises(UnknownWordError):
            self.feed("FORGET FOO")
        with self.assertRaises(UnexpectedEndError):
            self.feed("FORGET")

    def test_user_word_shadows_native(self):
        self.feed(": DUP 99 ; 1 DUP")
        self.assertEqual(self.vm.D, [1.0, 99.0])
        self.feed("FORGET dup CLEAR 1 DUP")
        self.assertEqual(self.vm.D, [1.0, 1.0])

    def test_definition_errors(self):
        with self.assertRaises(UnexpectedEndError):
            self.feed(":")
        with self.assertRaises(UnexpectedEndError):
            self.feed(": FOO 1 2")
        self.assertIsNone(self.vm.dict.find("FOO"))
        # corps non validé à la définition
        self.feed(": BAD IF 1 ;")
        with self.assertRaises(UnmatchedControlError):
            self.feed("0 BAD")

    def test_underflow_never_defaults(self):
        with self.assertRaises(StackUnderflowError):
            self.feed("1 +")
        self.assertEqual(self.vm.D, [])
        with self.assertRaises(StackUnderflowError):
            self.feed("DROP")

    def test_failure_keeps_partial_state(self):
        out = io.StringIO()
        with self.assertRaises(UnknownWordError):
            self.vm.interpret_line("1 2 . NOPE 3", out=out)
        self.assertEqual(self.vm.D, [1.0])
        self.assertEqual(out.getvalue(), "2\n")

    def test_type_mismatch_and_divide_by_zero(self):
        with self.assertRaises(TypeMismatchError):
            self.feed('"a" 1 +')
        with self.assertRaises(TypeMismatchError):
            self.feed('"x" IF THEN')
        with self.assertRaises(DivideByZeroError):
            self.feed("1 0 /")
        with self.assertRaises(DivideByZeroError):
            self.feed("1 0 MOD")

    def test_strings(self):
        self.assertEqual(self.feed('"hello world" .'), "hello world\n")
        self.assertEqual(self.feed('"a" TYPE "b" TYPE CR'), "ab\n")
        self.assertEqual(self.lines('"a" "a" = .'), ["-1"])
        with self.assertRaises(UnknownWordError):
            self.feed('"unterminated string')

    def test_dates(self):
        self.assertEqual(self.feed("2021-03-01 2021-01-31 - ."), "+0000-00-29 00:00:00\n")
        self.assertEqual(self.feed("2021-01-31 2021-03-01 - ."), "-0000-00-29 00:00:00\n")
        self.assertEqual(self.feed("2021-01-31 DUP 2021-03-01 SWAP - + ."), "2021-03-01 00:00:00\n")
        self.assertEqual(self.feed("2021-01-01T10:00 T1:30 + ."), "2021-01-01 11:30:00\n")
        self.assertEqual(self.feed("2021/1/1 T0:30:15 - ."), "2020-12-31 23:29:45\n")
        self.assertEqual(self.feed("2021-02-27 2 + ."), "2021-03-01 00:00:00\n")
        self.assertEqual(self.feed("T1:30 T0:45 + ."), "02:15:00\n")
        self.assertEqual(self.feed("T12:00 >DAYS ."), "0.5\n")
        self.assertEqual(self.feed("2 DAYS> ."), "2.00:00:00\n")
        self.assertEqual(self.feed("2021-01-01 2021-01-02 < ."), "-1\n")
        with self.assertRaises(TypeMismatchError):
            self.feed("T1:00 2021-01-01 +")

    def test_now_and_today(self):
        self.feed("NOW TODAY")
        now, today = self.vm.D
        self.assertIsInstance(now, Moment)
        self.assertEqual(today.at.hour, 0)
        self.assertLessEqual(today.at, now.at)

    def test_stop_ends_evaluation(self):
        self.feed("1 STOP 2")
        self.assertEqual(self.vm.D, [1.0])
        self.assertFalse(self.vm.alive)

    def test_unbounded_recursion_is_reported(self):
        with self.assertRaises(RecursionDepthError):
            self.feed(": R R ; R")
        self.assertIsNone(self.vm._cur_body)
        self.assertEqual(self.feed("1 ."), "1\n")

    def test_bounded_recursion_depth(self):
        # chaque niveau de mot utilisateur coûte quelques frames Python
        self.feed(": CNT DUP 0> IF 1- CNT THEN ; 150 CNT")
        self.assertEqual(self.vm.D, [0.0])

    def test_loop_body_scanned_once(self):
        self.feed(": L3 3 0 DO I 1 = IF LEAVE THEN LOOP ;")
        w = self.vm.dict.find("L3")
        self.feed("L3")
        self.assertEqual(w.body._targets, {6: 8, 7: 9})

    def test_words_and_dot_commands(self):
        self.assertIn("DUP", self.feed("WORDS").split())
        self.feed(": SQR DUP * ; 1 2")
        out = io.StringIO()
        self.vm.handle_dot_command(".stack", out)
        self.vm.handle_dot_command(".see sqr", out)
        self.vm.handle_dot_command(".dict SQ", out)
        self.vm.handle_dot_command(".nope", out)
        self.assertEqual(out.getvalue().splitlines(),
                         ["<2> 1 2", ": SQR DUP * ;", "SQR", "unknown dot-cmd: .nope"])
        self.vm.handle_dot_command(".reset", out)
        self.assertEqual(self.vm.D, [])
        self.vm.handle_dot_command(".bye", out)
        self.assertFalse(self.vm.alive)

    def test_independent_instances(self):
        other = VM()
        self.feed(": FOO 1 ; 5")
        self.assertIsNone(other.dict.find("FOO"))
        self.assertEqual(other.D, [])


def test_all():
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    runner.run(suite)


# lancé à la main ; pytest collecte déjà les TestCase
test_all.__test__ = False


if __name__ == "__main__":
    test_all()
