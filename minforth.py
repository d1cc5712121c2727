#!/usr/bin/env python3
"""
minforth.py: a minimal Forth-like interpreter.

One data stack of signed 64-bit integers, one dictionary of words, and a
colon compiler for defining new words out of existing ones.

Architecture:
  - Tokenizer: lowercase the line, split on whitespace
  - Outer interpreter: each token is either captured by an open definition
    or looked up / parsed and executed immediately
  - Compiler: ': name body ;' resolves every body token at compile time
    (early binding) and installs a Compiled word
  - Failures raise ForthError; the REPL reports one generic line per input
    line, and everything done before the failure stays done

Words:
  + - * /        wrapping 64-bit arithmetic, / truncates toward zero
  > < =          true = -1, false = 0
  and or         bitwise
  .              pop and print
  dup swap
"""

import argparse
import contextlib
import ctypes
import enum
import re
import sys

__version__ = '1.0.0'

PROMPT              = 'minforth> '
CONTINUATION_PROMPT = '... '
FAILURE_MESSAGE     = 'operation failed'

DEF_START = ':'
DEF_END   = ';'

INT64_MIN = -2**63
INT64_MAX = 2**63 - 1


class ForthError(Exception):
    word = None  # the word that was running when it failed, if any

class StackUnderflow(ForthError):
    pass

class DivisionByZero(ForthError):
    pass

class UnresolvedToken(ForthError):
    pass


# ── Tokenizer ─────────────────────────────────────────────────────────────────

_INT_RE = re.compile(r'[+-]?[0-9]+\Z')


def tokenize(line: str) -> list:
    return line.lower().split()


def parse_int(token: str) -> int:
    """Parse a base-10 signed 64-bit literal, or raise ValueError."""
    if not _INT_RE.match(token):
        raise ValueError(f'not an integer: {token!r}')
    value = int(token, 10)
    if not INT64_MIN <= value <= INT64_MAX:
        raise ValueError(f'out of 64-bit range: {token!r}')
    return value


def wrap64(n: int) -> int:
    return ctypes.c_int64(n).value


# ── Stack ─────────────────────────────────────────────────────────────────────

class Stack(list):
    """
    The data stack. The last element is the top.

    Every operation checks its arity before touching the data, so a failed
    operation leaves the stack exactly as it found it.
    """

    def __repr__(self):
        return f'Stack{list(self)}'

    def need(self, n: int, word: str):
        if len(self) < n:
            raise StackUnderflow(f'{word!r} needs {n}, have {len(self)}')

    def push(self, value: int):
        self.append(value)

    def _binary(self, word, op):
        self.need(2, word)
        b = self[-1]; a = self[-2]
        result = op(a, b)
        del self[-1]
        self[-1] = result

    def add(self):       self._binary('+', lambda a, b: wrap64(a + b))
    def subtract(self):  self._binary('-', lambda a, b: wrap64(a - b))
    def multiply(self):  self._binary('*', lambda a, b: wrap64(a * b))

    def divide(self):
        self.need(2, '/')
        if self[-1] == 0:
            raise DivisionByZero(f'{self[-2]} / 0')

        def trunc(a, b):
            q = abs(a) // abs(b)
            return wrap64(-q if (a < 0) != (b < 0) else q)
        self._binary('/', trunc)

    # true = -1, false = 0
    def greater_than(self): self._binary('>', lambda a, b: -1 if a > b else 0)
    def less_than(self):    self._binary('<', lambda a, b: -1 if a < b else 0)
    def equal_to(self):     self._binary('=', lambda a, b: -1 if a == b else 0)

    def and_(self): self._binary('and', lambda a, b: a & b)
    def or_(self):  self._binary('or',  lambda a, b: a | b)

    def dot(self) -> int:
        self.need(1, '.')
        return self.pop()

    def dup(self):
        self.need(1, 'dup')
        self.append(self[-1])

    def swap(self):
        self.need(2, 'swap')
        self[-1], self[-2] = self[-2], self[-1]


# ── Words ─────────────────────────────────────────────────────────────────────

class Word:
    """
    Something that runs against the stack.

    `emit` receives any text the word prints. A word that fails raises
    ForthError.
    """
    name = None

    def __call__(self, stack: Stack, emit):
        raise NotImplementedError

    def describe(self) -> str:
        return f'<{type(self).__name__.lower()} {self.name}>'

    def __repr__(self):
        return self.describe()


class Primitive(Word):
    def __init__(self, name: str, fn):
        self.name = name
        self.fn = fn

    def __call__(self, stack, emit):
        self.fn(stack, emit)


class Literal(Word):
    def __init__(self, value: int):
        self.name = str(value)
        self.value = value

    def __call__(self, stack, emit):
        stack.push(self.value)

    def describe(self):
        return self.name


class Compiled(Word):
    """
    A colon definition: the body words, resolved when the definition was
    compiled, run in order. The first failing word stops the run.

    Nested definitions run on an explicit frame stack of (word, ip), so a
    deep chain of definitions does not grow the Python call stack.
    """
    def __init__(self, name: str, body):
        self.name = name
        self.body = tuple(body)

    def __call__(self, stack, emit):
        frames = [(self, 0)]
        while frames:
            owner, ip = frames.pop()
            if ip >= len(owner.body):
                continue
            frames.append((owner, ip + 1))
            word = owner.body[ip]
            if isinstance(word, Compiled):
                frames.append((word, 0))
                continue
            try:
                word(stack, emit)
            except ForthError as e:
                if e.word is None:
                    e.word = owner
                raise

    def describe(self):
        parts = [DEF_START, self.name]
        for word in self.body:
            parts.append(word.name)
        parts.append(DEF_END)
        return ' '.join(parts)


def _dot(stack, emit):
    emit(f'{stack.dot()}\n')


def standard_library() -> dict:
    """Return a fresh dictionary seeded with the built-in words."""
    words = {}

    def prim(name, fn):
        words[name] = Primitive(name, fn)

    prim('+',    lambda s, emit: s.add())
    prim('-',    lambda s, emit: s.subtract())
    prim('*',    lambda s, emit: s.multiply())
    prim('/',    lambda s, emit: s.divide())
    prim('>',    lambda s, emit: s.greater_than())
    prim('<',    lambda s, emit: s.less_than())
    prim('=',    lambda s, emit: s.equal_to())
    prim('and',  lambda s, emit: s.and_())
    prim('or',   lambda s, emit: s.or_())
    prim('.',    _dot)
    prim('dup',  lambda s, emit: s.dup())
    prim('swap', lambda s, emit: s.swap())
    return words


# ── Session ───────────────────────────────────────────────────────────────────

class CompileState(enum.Enum):
    IDLE          = 'idle'
    AWAITING_NAME = 'awaiting name'
    ACCUMULATING  = 'accumulating'


class PendingDefinition:
    def __init__(self):
        self.name: str | None = None
        self.body: list = []


class Session:
    def __init__(self):
        self.stack = Stack()
        self.words: dict = standard_library()
        self.pending: PendingDefinition | None = None
        self.error: ForthError | None = None
        self.out:   list = []

    @property
    def state(self) -> CompileState:
        if self.pending is None:
            return CompileState.IDLE
        if self.pending.name is None:
            return CompileState.AWAITING_NAME
        return CompileState.ACCUMULATING

    @property
    def compiling(self) -> bool:
        return self.pending is not None

    def _emit(self, s):
        self.out.append(s)

    # ── Public ────────────────────────────────────────────────────────────────

    def interpret(self, line: str) -> str:
        """
        Evaluate one line of input and return what it printed.

        A failing line ends with FAILURE_MESSAGE. Output printed by tokens
        before the failure is kept, and so are their stack effects.
        """
        self.out = []
        self.error = None
        try:
            self.evaluate(tokenize(line))
        except ForthError as e:
            self.error = e
            self.out.append(FAILURE_MESSAGE + '\n')
        return ''.join(self.out)

    def evaluate(self, tokens):
        for tok in tokens:
            if self.compiling:
                self._compile(tok)
            else:
                self._execute(tok)

    def abandon(self):
        self.pending = None

    def reset(self):
        self.stack = Stack()
        self.words = standard_library()
        self.pending = None
        self.error = None

    # ── Outer interpreter ─────────────────────────────────────────────────────

    def _execute(self, tok: str):
        if tok == DEF_START:
            self.pending = PendingDefinition()
            return
        if tok == DEF_END:
            raise UnresolvedToken(f'{DEF_END} outside a definition')

        word = self.words.get(tok)
        if word is not None:
            try:
                word(self.stack, self._emit)
            except ForthError as e:
                if e.word is None:
                    e.word = word
                raise
            return
        try:
            self.stack.push(parse_int(tok))
        except ValueError:
            raise UnresolvedToken(f'undefined: {tok}') from None

    # ── Compiler ──────────────────────────────────────────────────────────────

    def _compile(self, tok: str):
        d = self.pending

        # The token right after ':' is the name, whatever it is.
        if d.name is None:
            d.name = tok
            return

        if tok == DEF_START:
            self.pending = PendingDefinition()
            return
        if tok == DEF_END:
            self.words[d.name] = Compiled(d.name, d.body)
            self.pending = None
            return

        try:
            d.body.append(self._resolve(tok))
        except UnresolvedToken:
            self.pending = None
            raise

    def _resolve(self, tok: str) -> Word:
        word = self.words.get(tok)
        if word is not None:
            return word
        try:
            return Literal(parse_int(tok))
        except ValueError:
            raise UnresolvedToken(f'undefined (compile): {tok}') from None


# ── Tests ─────────────────────────────────────────────────────────────────────

SELF_TEST_CASES = [
    # Arithmetic
    ('1 2 + .',                      '3\n'),
    ('10 3 - .',                     '7\n'),
    ('6 7 * .',                      '42\n'),
    ('20 4 / .',                     '5\n'),
    ('-7 2 / .',                     '-3\n'),
    ('7 -2 / .',                     '-3\n'),
    ('9223372036854775807 1 + .',    '-9223372036854775808\n'),
    ('-9223372036854775808 -1 / .',  '-9223372036854775808\n'),

    # Comparison (true = -1, false = 0)
    ('3 4 < .',                      '-1\n'),
    ('3 4 > .',                      '0\n'),
    ('5 5 = .',                      '-1\n'),
    ('5 6 = .',                      '0\n'),

    # Logic
    ('-1 0 and .',                   '0\n'),
    ('12 10 and .',                  '8\n'),
    ('12 10 or .',                   '14\n'),

    # Stack
    ('5 dup . .',                    '5\n5\n'),
    ('1 2 swap . .',                 '1\n2\n'),

    # Definitions
    (': square dup * ; 4 square .',  '16\n'),
    (': SQUARE DUP * ; 3 square .',  '9\n'),
    (': seven 7 ; seven seven + .',  '14\n'),
    (': dup dup dup ; 2 dup . . .',  '2\n2\n2\n'),

    # Failures
    ('+',                            FAILURE_MESSAGE + '\n'),
    ('1 0 / 5 .',                    FAILURE_MESSAGE + '\n'),
    ('1 . foo 2 .',                  '1\n' + FAILURE_MESSAGE + '\n'),
    (': bad foo ; bad',              FAILURE_MESSAGE + '\n'),
    (';',                            FAILURE_MESSAGE + '\n'),
    ('99999999999999999999',         FAILURE_MESSAGE + '\n'),
]


def run_tests():
    passed = 0
    failures = []

    for src, expected in SELF_TEST_CASES:
        got = Session().interpret(src)
        if got == expected:
            passed += 1
        else:
            failures.append((src, expected, got))

    print(f'Tests: {passed}/{len(SELF_TEST_CASES)} passed')
    for src, exp, got in failures:
        print(f'  FAIL: {src}')
        print(f'    exp: {exp!r}')
        print(f'    got: {got!r}')
    return passed, len(SELF_TEST_CASES)


# ── Interactive REPL ──────────────────────────────────────────────────────────

def _report(session: Session, verbose: bool):
    if not verbose or session.error is None:
        return
    print(f'error: {session.error}', file=sys.stderr)
    if session.error.word is not None:
        print(f'  in {session.error.word.describe()}', file=sys.stderr)


def repl(session: Session, prompt: str = PROMPT, verbose: bool = False):
    try:
        import readline  # noqa: F401
    except ImportError:
        pass

    while True:
        try:
            line = input(CONTINUATION_PROMPT if session.compiling else prompt)
        except EOFError:
            print()
            break
        except KeyboardInterrupt:
            print('\nInterrupted, definition discarded; stack and words kept')
            session.abandon()
            continue
        print(session.interpret(line), end='')
        _report(session, verbose)


def run_file(session: Session, f, verbose: bool = False) -> bool:
    """Feed every line of `f` to the session. Return True if none failed."""
    ok = True
    for line in f:
        print(session.interpret(line), end='')
        _report(session, verbose)
        ok = ok and session.error is None
    return ok


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='minforth', description='A minimal Forth-like interpreter')
    parser.add_argument('file', nargs='?',
                        help="source file to run line by line ('-' for stdin)")
    parser.add_argument('--prompt', default=PROMPT,
                        help='interactive prompt (default: %(default)r)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='report why a line failed on stderr')
    parser.add_argument('--test', action='store_true',
                        help='run the built-in self-test table')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    args = parser.parse_args(argv)

    if args.test:
        p, t = run_tests()
        return 0 if p == t else 1

    session = Session()
    if args.file is not None:
        src = contextlib.nullcontext(sys.stdin) if args.file == '-' else open(args.file)
        with src as f:
            return 0 if run_file(session, f, args.verbose) else 1

    repl(session, args.prompt, args.verbose)
    return 0


if __name__ == '__main__':
    sys.exit(main())
