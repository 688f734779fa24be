#!/usr/bin/env python3
"""
LCS - Library Command Search
Store long shell commands with a short description, find them again by
searching, fill in {"Label":"Default"} variables and run, print or copy them.

The library is a plain ';' separated text file (default ~/.lcs-db.csv):

    # lines starting with '#' are comments
    Echo test;echo "Hello" # {"Name":"World"}
"""

import os
import sys
import re
import stat
import signal
import shutil
import logging
import subprocess
import argparse
import tempfile
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field, replace

# Line editing with pre-filled defaults (not available on every platform)
try:
    import readline
    READLINE_AVAILABLE = True
except ImportError:
    READLINE_AVAILABLE = False
    readline = None

# Optional clipboard support
try:
    import pyperclip
    CLIPBOARD_AVAILABLE = True
except ImportError:
    CLIPBOARD_AVAILABLE = False
    pyperclip = None

APP_VERSION = '0.92'

DEFAULT_DB_PATH = '~/.lcs-db.csv'
DB_ENV_VAR = 'LCS_DB'

FIELD_DELIMITER = ';'
COMMENT_MARKER = '#'

# {"Label":"DefaultValue"} - no escaped quotes inside label or default
PLACEHOLDER_RE = re.compile(r'\{"([^"]+)":"([^"]*)"\}')

logger = logging.getLogger('lcs')


# ── Errors ────────────────────────────────────────────────────────────────────

class ErrorKind(Enum):
    STORE_NOT_FOUND = 'store_not_found'
    EMPTY_REQUIRED_FIELD = 'empty_required_field'
    OUT_OF_RANGE = 'out_of_range'
    INVALID_SELECTION = 'invalid_selection'
    CLIPBOARD_UNAVAILABLE = 'clipboard_unavailable'
    IO_FAILURE = 'io_failure'
    EXECUTION_FAILURE = 'execution_failure'
    INVALID_FIELD = 'invalid_field'


class LcsError(Exception):
    """Root of every error that ends an lcs invocation"""
    kind = None
    exit_code = 1


class StoreNotFoundError(LcsError):
    """The command library file does not exist"""
    kind = ErrorKind.STORE_NOT_FOUND

    def __init__(self, path):
        super().__init__(
            f"Database file not found: {path}\n"
            f"Create it with format: Description{FIELD_DELIMITER}Command"
        )
        self.path = path


class EmptyFieldError(LcsError):
    kind = ErrorKind.EMPTY_REQUIRED_FIELD


class InvalidFieldError(LcsError):
    """The entry would not read back as the same record"""
    kind = ErrorKind.INVALID_FIELD


class OutOfRangeError(LcsError):
    kind = ErrorKind.OUT_OF_RANGE


class InvalidSelectionError(LcsError):
    kind = ErrorKind.INVALID_SELECTION


class ClipboardUnavailableError(LcsError):
    kind = ErrorKind.CLIPBOARD_UNAVAILABLE


class StoreIOError(LcsError):
    """Reading, writing or replacing the library file failed"""
    kind = ErrorKind.IO_FAILURE

    def __init__(self, action, path, cause):
        super().__init__(f"Error {action} {path}: {cause}")
        self.path = path
        self.cause = cause


class ExecutionError(LcsError):
    kind = ErrorKind.EXECUTION_FAILURE


# ── Record codec ──────────────────────────────────────────────────────────────

class LineKind(Enum):
    RECORD = 'record'
    COMMENT = 'comment'
    MALFORMED = 'malformed'


@dataclass(frozen=True)
class Record:
    description: str
    command: str


@dataclass(frozen=True)
class StoreLine:
    """One raw line of the library and its terminator, kept verbatim for rewrites"""
    raw: str
    kind: LineKind
    record: Record = None
    ending: str = '\n'


def decode_line(raw):
    """Classify one line of the library file.

    Comments start with '#' (after optional whitespace). Everything else is
    split on the first ';' only, so the command may contain further ';'.
    Quotes are taken literally; there is no CSV unquoting.
    """
    raw = raw.rstrip('\r\n')
    if raw.lstrip().startswith(COMMENT_MARKER):
        return StoreLine(raw, LineKind.COMMENT)

    description, sep, command = raw.partition(FIELD_DELIMITER)
    if not sep:
        return StoreLine(raw, LineKind.MALFORMED)
    return StoreLine(raw, LineKind.RECORD, Record(description, command))


def encode_record(record):
    """Join a record into one library line (delimiters are not escaped)"""
    return f"{record.description}{FIELD_DELIMITER}{record.command}"


# ── Store ─────────────────────────────────────────────────────────────────────

class Store:
    """Ordered lines of the library file: records, comments and malformed lines"""

    def __init__(self, path, lines=None):
        self.path = Path(path)
        self.lines = list(lines or [])

    @classmethod
    def load(cls, path, must_exist=True):
        """Read the library; a missing file is only fine when just adding"""
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8', errors='surrogateescape', newline='') as f:
                content = f.read()
        except FileNotFoundError:
            if must_exist:
                raise StoreNotFoundError(path)
            return cls(path)
        except (IOError, OSError) as e:
            raise StoreIOError('reading', path, e)

        raw_lines = content.split('\n')
        if raw_lines and raw_lines[-1] == '':
            raw_lines.pop()
        lines = []
        for raw in raw_lines:
            line = decode_line(raw)
            if raw.endswith('\r'):
                line = replace(line, ending='\r\n')
            lines.append(line)
        return cls(path, lines)

    def records(self):
        """Yield (position, record) for every record line"""
        for position, line in enumerate(self.lines):
            if line.kind is LineKind.RECORD:
                yield position, line.record

    def append(self, record):
        """Append one record without touching the existing bytes"""
        line = decode_line(encode_record(record))
        if self.lines:
            line = replace(line, ending=self.lines[-1].ending)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            needs_newline = self._missing_final_newline()
            with open(self.path, 'a', encoding='utf-8', errors='surrogateescape', newline='') as f:
                if needs_newline:
                    f.write(line.ending)
                f.write(line.raw + line.ending)
        except (IOError, OSError) as e:
            raise StoreIOError('writing', self.path, e)

        self.lines.append(line)
        logger.info("Appended entry to %s", self.path)

    def delete(self, position):
        """Rewrite the library without the line at position"""
        if not 0 <= position < len(self.lines):
            raise IndexError(f"no line at position {position}")
        remaining = self.lines[:position] + self.lines[position + 1:]
        self.rewrite_all(remaining)

    def replace(self, position, record):
        """Edit is delete-then-append: the edited entry moves to the end"""
        self.delete(position)
        self.append(record)

    def rewrite_all(self, lines):
        """Atomically replace the library file with the given lines.

        A symlinked library is replaced at its target so the link stays intact.
        """
        target = self.path.resolve()
        directory = target.parent
        tmp_path = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode='w', encoding='utf-8', errors='surrogateescape', newline='',
                delete=False, dir=directory, prefix=f".{target.name}.", suffix='.tmp'
            ) as tmp:
                tmp_path = tmp.name
                for line in lines:
                    tmp.write(line.raw + line.ending)
                tmp.flush()
                os.fsync(tmp.fileno())

            if target.exists():
                os.chmod(tmp_path, stat.S_IMODE(target.stat().st_mode))
            os.replace(tmp_path, target)
        except (IOError, OSError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreIOError('saving', self.path, e)

        self.lines = list(lines)
        logger.info("Rewrote %s (%d lines)", self.path, len(self.lines))

    def _missing_final_newline(self):
        if not self.path.exists() or self.path.stat().st_size == 0:
            return False
        with open(self.path, 'rb') as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) not in (b'\n', b'\r')


# ── Matcher ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Match:
    description: str
    command: str
    position: int


def find_matches(store, term):
    """Case-insensitive substring search over description and command, in store order"""
    term = term.lower()
    matches = []
    for position, record in store.records():
        if (not term
                or term in record.description.lower()
                or term in record.command.lower()):
            matches.append(Match(record.description, record.command, position))
    return matches


# ── Template engine ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Placeholder:
    label: str
    default: str
    start: int
    end: int


def find_placeholders(command):
    """List every placeholder occurrence, left to right"""
    return [
        Placeholder(m.group(1), m.group(2), m.start(), m.end())
        for m in PLACEHOLDER_RE.finditer(command)
    ]


def resolve_placeholders(command, ask):
    """Fill in every {"Label":"Default"} of a command, leftmost first.

    ``ask(label, default)`` returns the operator's answer; a blank answer
    selects the default. Each occurrence is asked for separately, even when
    the same placeholder appears twice. Values are spliced in at the match
    offsets and scanning resumes after the inserted text, so an answer is
    inserted literally and never treated as another placeholder.
    """
    pos = 0
    while True:
        m = PLACEHOLDER_RE.search(command, pos)
        if m is None:
            return command

        label, default = m.group(1), m.group(2)
        answer = ask(label, default).strip()
        value = answer if answer else default

        command = command[:m.start()] + value + command[m.end():]
        pos = m.start() + len(value)


# ── Collaborators: prompt, clipboard, shell ───────────────────────────────────

def prompt_line(prompt, prefill=None):
    """Read one line from the operator, optionally pre-filling the edit buffer"""
    if prefill and READLINE_AVAILABLE:
        readline.set_startup_hook(lambda: readline.insert_text(prefill))
    try:
        return input(prompt)
    except EOFError:
        return ''
    finally:
        if prefill and READLINE_AVAILABLE:
            readline.set_startup_hook()


def copy_to_clipboard(text):
    """Copy text with pyperclip or raise ClipboardUnavailableError"""
    if not CLIPBOARD_AVAILABLE:
        raise ClipboardUnavailableError("Clipboard support not available (install pyperclip)")
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        raise ClipboardUnavailableError(f"No clipboard backend found: {e}")


def find_shell():
    """bash if present, else $SHELL, else /bin/sh"""
    bash = shutil.which('bash')
    if bash:
        return bash
    shell = os.environ.get('SHELL', '/bin/sh')
    if not os.path.exists(shell):
        shell = '/bin/sh'
    return shell


def _ignore_signal(signum, frame):
    # The child shares the terminal and receives the signal itself
    logger.info("Ignoring signal %d while the command runs", signum)


def execute(command):
    """Run command in a shell attached to this terminal and return its exit code.

    Interrupt and termination signals are absorbed here for as long as the
    child runs, so Ctrl+C inside ssh or vim reaches the child only.
    """
    absorbed = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, 'SIGQUIT'):
        absorbed.append(signal.SIGQUIT)

    previous = {signum: signal.signal(signum, _ignore_signal) for signum in absorbed}
    try:
        try:
            process = subprocess.Popen([find_shell(), '-c', command])
        except (IOError, OSError) as e:
            raise ExecutionError(f"Execution error: {e}")
        returncode = process.wait()
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if returncode < 0:
        return 128 - returncode
    return returncode


# ── Configuration ─────────────────────────────────────────────────────────────

class Mode(Enum):
    RUN = 'run'
    PRINT = 'print'
    COPY = 'copy'
    ADD = 'add'
    REMOVE = 'remove'
    EDIT = 'edit'


@dataclass(frozen=True)
class Config:
    """Everything one invocation needs, built once from the command line"""
    db_path: Path
    mode: Mode = Mode.RUN
    verbose: bool = False
    fast: int = 0
    terms: tuple = field(default_factory=tuple)

    @property
    def search_term(self):
        return ' '.join(self.terms)


def resolve_db_path(db_arg=None, environ=None):
    """--db beats $LCS_DB beats ~/.lcs-db.csv"""
    environ = os.environ if environ is None else environ
    path = db_arg or environ.get(DB_ENV_VAR) or DEFAULT_DB_PATH
    return Path(path).expanduser()


def build_config(args, environ=None):
    if args.add:
        mode = Mode.ADD
    elif args.remove:
        mode = Mode.REMOVE
    elif args.edit:
        mode = Mode.EDIT
    elif args.print:
        mode = Mode.PRINT
    elif args.copy:
        mode = Mode.COPY
    else:
        mode = Mode.RUN

    return Config(
        db_path=resolve_db_path(args.db, environ),
        mode=mode,
        verbose=args.verbose,
        fast=args.fast,
        terms=tuple(args.terms),
    )


# ── Launcher ──────────────────────────────────────────────────────────────────

class Launcher:
    """Runs one lcs invocation: add, or search -> select -> remove/edit/resolve+dispatch"""

    def __init__(self, config, prompt=prompt_line, clipboard=copy_to_clipboard, runner=execute):
        self.config = config
        self.prompt = prompt
        self.clipboard = clipboard
        self.runner = runner

    def run(self):
        """Perform the configured operation and return the exit code"""
        logger.info("Using DB: %s", self.config.db_path)

        if self.config.mode is Mode.ADD:
            return self.add_entry()

        store = Store.load(self.config.db_path)
        matches = find_matches(store, self.config.search_term)
        if not matches:
            print("\033[93mNo matches found.\033[0m")
            return 0

        match = self.select_match(matches)

        if self.config.mode is Mode.REMOVE:
            return self.remove_entry(store, match)
        if self.config.mode is Mode.EDIT:
            return self.edit_entry(store, match)

        final_command = self.resolve(match.command)

        if self.config.mode is Mode.PRINT:
            print(final_command)
            return 0
        if self.config.mode is Mode.COPY:
            return self.copy_command(final_command)

        if self.config.verbose:
            print(f"\033[90mExecuting: {final_command}\033[0m")
        elif len(matches) > 1:
            print("\033[90mExecuting...\033[0m")
        return self.runner(final_command)

    def select_match(self, matches):
        """Pick one match by fast index, auto-select or numbered menu"""
        count = len(matches)
        fast = self.config.fast

        if fast > 0:
            if fast > count:
                raise OutOfRangeError(
                    f"Fast choice {fast} is out of range. Only {count} matches found."
                )
            match = matches[fast - 1]
            logger.info("Fast selected [%d]: %s", fast, match.description)
            return match

        if count == 1:
            match = matches[0]
            print(f"\033[94mFound 1 match: {match.description}\033[0m")
            logger.info("Cmd: %s", match.command)
            return match

        if self.config.mode is Mode.REMOVE:
            print("\033[93mSelect command to REMOVE:\033[0m")
        elif self.config.mode is Mode.EDIT:
            print("\033[94mSelect command to EDIT:\033[0m")
        else:
            print("\033[94mFound commands:\033[0m")

        for i, m in enumerate(matches, 1):
            print(f"\033[96m[{i}]\033[0m {m.description}")
            print(f"\033[90m    Cmd: {m.command}\033[0m")

        print()
        answer = self.prompt("Select a number: ").strip()
        try:
            choice = int(answer)
        except ValueError:
            raise InvalidSelectionError("Invalid selection.")
        if not 1 <= choice <= count:
            raise InvalidSelectionError("Invalid selection.")
        return matches[choice - 1]

    def add_entry(self):
        terms = self.config.terms
        if len(terms) >= 2:
            description = terms[0]
            command = ' '.join(terms[1:])
        else:
            print("\033[94m--- Add New Command ---\033[0m")
            description = self.prompt("Description: ")
            command = self.prompt("Command: ")

        record = self._checked_record(description, command)
        store = Store.load(self.config.db_path, must_exist=False)
        store.append(record)
        print("\033[92m✅ Entry added successfully.\033[0m")
        return 0

    def remove_entry(self, store, match):
        store.delete(match.position)
        print("\033[92m✅ Entry removed successfully.\033[0m")
        return 0

    def edit_entry(self, store, match):
        """Prompt for new values, then delete the old line and append the new one"""
        print("\033[94m--- Edit Entry (Press Enter to keep current) ---\033[0m")
        description = self.prompt(f"Description [{match.description}]: ", match.description)
        command = self.prompt(f"Command [{match.command}]: ", match.command)

        record = self._checked_record(
            description.strip() or match.description,
            command.strip() or match.command,
        )
        store.replace(match.position, record)
        print("\033[92m✅ Entry edited successfully.\033[0m")
        return 0

    def resolve(self, command):
        placeholders = find_placeholders(command)
        if placeholders:
            logger.info("Variables: %s", ', '.join(p.label for p in placeholders))

        def ask(label, default):
            return self.prompt(f"Input for '{label}' [{default}]: ")

        return resolve_placeholders(command, ask)

    def copy_command(self, command):
        try:
            self.clipboard(command)
        except ClipboardUnavailableError:
            print("\033[93mCommand was:\033[0m")
            print(command)
            raise
        print("\033[92m📋 Command copied to clipboard.\033[0m")
        return 0

    def _checked_record(self, description, command):
        description = description.strip()
        command = command.strip()
        if not description or not command:
            raise EmptyFieldError("Description and Command cannot be empty.")
        if description.startswith(COMMENT_MARKER):
            raise InvalidFieldError(f"Description cannot start with '{COMMENT_MARKER}' (it would be read as a comment).")
        if FIELD_DELIMITER in description:
            raise InvalidFieldError(f"Description cannot contain '{FIELD_DELIMITER}'.")
        if any(c in description + command for c in '\r\n'):
            raise InvalidFieldError("Description and Command must be a single line.")
        return Record(description, command)


# ── Command line ──────────────────────────────────────────────────────────────

HELP_EPILOG = f"""\
The DB is a '{FIELD_DELIMITER}' separated text file (default {DEFAULT_DB_PATH},
or ${DB_ENV_VAR}). Lines starting with '{COMMENT_MARKER}' are comments.
Example entry:
  Echo test;echo "Hello" # {{"Name":"World"}}

Using variables:
  Define variables in commands to be filled at runtime.
  Syntax:  {{"Label":"DefaultValue"}}
  Example: ssh -i {{"KeyFile":"~/.ssh/id_rsa"}} user@host
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog='lcs',
        description='LCS - Library Command Search: store and find long commands easily',
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('terms', nargs='*', metavar='search_term',
                        help='Search words (with --add: "Description" "Command")')
    parser.add_argument('--version', action='version', version=f'lcs {APP_VERSION}')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show verbose logging')
    parser.add_argument('-f', '--fast', type=int, default=0, metavar='N',
                        help='Fast select option number (e.g. -f 2)')
    parser.add_argument('--print', action='store_true', help='Print command only')
    parser.add_argument('--copy', action='store_true', help='Copy command to clipboard (no execution)')
    parser.add_argument('--add', action='store_true', help='Add a new command')
    parser.add_argument('--remove', action='store_true', help='Search and remove a command')
    parser.add_argument('--edit', action='store_true', help='Search, remove and re-add/edit')
    parser.add_argument('--db', metavar='PATH', help=f'Path to custom database (default: {DEFAULT_DB_PATH})')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)
    config = build_config(args)

    # Undecodable library bytes are echoed back as they were read
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, 'reconfigure'):
            stream.reconfigure(errors='surrogateescape')

    level = logging.INFO if config.verbose else logging.WARNING
    logging.basicConfig(level=level, format="\033[90m%(message)s\033[0m")

    try:
        return Launcher(config).run()
    except LcsError as e:
        print(f"\033[91m❌ {e}\033[0m")
        return e.exit_code
    except KeyboardInterrupt:
        print("\n\033[37mCancelled.\033[0m")
        return 130


if __name__ == "__main__":
    sys.exit(main())
