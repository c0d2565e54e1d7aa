from __future__ import annotations
import fnmatch
import os
import queue
import socket
import subprocess
import sys
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from lexer import CriticalError, ExecuteError
from numhelper import EQUAL, BIGGER, NOT_EQUAL, SMALLER, compare_string_number, parse_int32
from parser import COMPARISON_KINDS, BranchCondition
from script import trim_percent
from variables import MacroTable, Variables


# (comparison kind, not_flag) -> comparator results that count as a match.
MATCH_TABLE: Dict[Tuple[str, bool], Tuple[str, ...]] = {
    ("Equal", False): (EQUAL,),
    ("Equal", True): (SMALLER, BIGGER, NOT_EQUAL),
    ("EqualX", False): (EQUAL,),
    ("EqualX", True): (SMALLER, BIGGER, NOT_EQUAL),
    ("Smaller", False): (SMALLER,),
    ("Smaller", True): (EQUAL, BIGGER),
    ("Bigger", False): (BIGGER,),
    ("Bigger", True): (EQUAL, SMALLER),
    ("SmallerEqual", False): (EQUAL, SMALLER),
    ("SmallerEqual", True): (BIGGER,),
    ("BiggerEqual", False): (EQUAL, BIGGER),
    ("BiggerEqual", True): (SMALLER,),
}

COMPARE_MESSAGES = {
    EQUAL: "is equal to",
    SMALLER: "is smaller than",
    BIGGER: "is bigger than",
    NOT_EQUAL: "is not equal to",
}


def comparison_matches(kind: str, not_flag: bool, result: str) -> bool:
    try:
        return result in MATCH_TABLE[(kind, not_flag)]
    except KeyError:
        raise CriticalError(f"Invalid comparison condition [{kind}]", rule="BRANCH")


# ---- Registry ----

REGISTRY_ROOTS = {
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKEY_CLASSES_ROOT": "HKEY_CLASSES_ROOT",
    "HKCU": "HKEY_CURRENT_USER",
    "HKEY_CURRENT_USER": "HKEY_CURRENT_USER",
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKEY_LOCAL_MACHINE": "HKEY_LOCAL_MACHINE",
    "HKU": "HKEY_USERS",
    "HKEY_USERS": "HKEY_USERS",
    "HKCC": "HKEY_CURRENT_CONFIG",
    "HKEY_CURRENT_CONFIG": "HKEY_CURRENT_CONFIG",
}


def parse_registry_root(text: str) -> Optional[str]:
    return REGISTRY_ROOTS.get(text.strip().upper())


class RegistryProbe:
    """Read-only registry queries backed by winreg."""

    def _winreg(self):
        if sys.platform != "win32":
            raise ExecuteError("Registry is not available on this platform")
        import winreg

        return winreg

    def subkey_exists(self, root: str, subkey: str) -> bool:
        winreg = self._winreg()
        try:
            with winreg.OpenKey(getattr(winreg, root), subkey):
                return True
        except OSError:
            return False

    def read_value(self, root: str, subkey: str, name: str) -> Optional[Tuple[object, int]]:
        """Return (data, value type), or None when the subkey or value is missing."""
        winreg = self._winreg()
        try:
            with winreg.OpenKey(getattr(winreg, root), subkey) as key:
                return winreg.QueryValueEx(key, name)
        except OSError:
            return None

    def is_multi_string(self, value_type: int) -> bool:
        return value_type == self._winreg().REG_MULTI_SZ


# ---- Disk images ----

WIMLIB_SUCCESS = 0
WIMLIB_INVALID_IMAGE = 18
WIMLIB_NOT_A_WIM_FILE = 43
WIMLIB_OPEN = 47
WIMLIB_PATH_DOES_NOT_EXIST = 49

WIMLIB_ERROR_NAMES = {
    WIMLIB_SUCCESS: "Success",
    WIMLIB_INVALID_IMAGE: "InvalidImage",
    WIMLIB_NOT_A_WIM_FILE: "NotAWimFile",
    WIMLIB_OPEN: "Open",
    WIMLIB_PATH_DOES_NOT_EXIST: "PathDoesNotExist",
}


class ImageError(Exception):
    def __init__(self, code: int, detail: str = "") -> None:
        super().__init__(code, detail)
        self.code = code
        self.detail = detail

    @property
    def name(self) -> str:
        return WIMLIB_ERROR_NAMES.get(self.code, f"Unknown{self.code}")


class ImageProbe:
    """Queries a WIM image through the wimlib-imagex command line tool."""

    def __init__(self, executable: str = "wimlib-imagex") -> None:
        self.executable = executable

    def _run(self, args: List[str]) -> bytes:
        try:
            proc = subprocess.run([self.executable, *args], capture_output=True, check=False)
        except OSError as exc:
            raise ExecuteError(f"Unable to run [{self.executable}]: {exc}") from exc
        if proc.returncode != 0:
            raise ImageError(proc.returncode, proc.stderr.decode("utf-8", errors="replace").strip())
        return proc.stdout

    def _xml(self, path: str) -> ET.Element:
        data = self._run(["info", path, "--xml"])
        text = data.decode("utf-16") if data[:2] in (b"\xff\xfe", b"\xfe\xff") else data.decode("utf-8", errors="replace")
        try:
            return ET.fromstring(text.lstrip("\ufeff"))
        except ET.ParseError as exc:
            raise ImageError(WIMLIB_NOT_A_WIM_FILE, str(exc)) from exc

    def image_count(self, path: str) -> int:
        return len(self._xml(path).findall("IMAGE"))

    def path_kind(self, path: str, index: int, inner: str) -> str:
        """Return "dir" or "file" for a path inside the image."""
        if index > self.image_count(path):
            raise ImageError(WIMLIB_INVALID_IMAGE)
        out = self._run(["dir", path, str(index), f"--path={inner}", "--detailed", "--one-file-only"])
        return "dir" if b"FILE_ATTRIBUTE_DIRECTORY" in out else "file"

    def image_property(self, path: str, index: int, key: str) -> Optional[str]:
        root = self._xml(path)
        for image in root.findall("IMAGE"):
            if image.get("INDEX") == str(index):
                node = image.find(key)
                return node.text if node is not None and node.text is not None else None
        raise ImageError(WIMLIB_INVALID_IMAGE)


# ---- Network ----

class NetworkProbe:
    def __init__(self, timeout: float = 3.0) -> None:
        self.timeout = timeout

    def ping(self, host: str) -> bool:
        if sys.platform == "win32":
            cmd = ["ping", "-n", "1", "-w", str(int(self.timeout * 1000)), host]
        else:
            cmd = ["ping", "-c", "1", "-W", str(max(int(self.timeout), 1)), host]
        proc = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
        return proc.returncode == 0

    def online(self) -> bool:
        # Connecting a UDP socket sends nothing; it only asks for a route.
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect(("192.0.2.1", 9))
            return sock.getsockname()[0] not in ("0.0.0.0", "")
        except OSError:
            return False
        finally:
            sock.close()


# ---- Prompt ----

def parse_yes_no(text: str) -> Optional[bool]:
    answer = text.strip().lower()
    if answer in ("y", "yes", "true"):
        return True
    if answer in ("n", "no", "false"):
        return False
    return None


class ConsolePrompter:
    """Yes/no prompt backed by one long-lived console reader thread.

    A timed-out question leaves its read outstanding; the reader hands the
    line to whichever question is waiting when it arrives. Replies typed
    while no question was shown are discarded before the next prompt.
    """

    def __init__(
        self,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.input_provider = input_provider or input
        self.output_sink = output_sink or print
        self._replies: "queue.Queue[Optional[str]]" = queue.Queue()
        self._requests = threading.Semaphore(0)
        self._lock = threading.Lock()
        self._reading = False
        self._reader: Optional[threading.Thread] = None

    def _read_loop(self) -> None:
        while True:
            self._requests.acquire()
            try:
                line: Optional[str] = self.input_provider()
            except EOFError:
                line = None
            with self._lock:
                self._reading = False
                self._replies.put(line)

    def _discard_stale(self) -> None:
        with self._lock:
            while True:
                try:
                    self._replies.get_nowait()
                except queue.Empty:
                    break

    def _request_line(self) -> None:
        with self._lock:
            if self._reading:
                return
            self._reading = True
            if self._reader is None:
                self._reader = threading.Thread(target=self._read_loop, name="bakescript-prompt", daemon=True)
                self._reader.start()
        self._requests.release()

    def ask(self, message: str, timeout: Optional[int] = None, default: bool = False) -> Tuple[bool, bool]:
        """Return (answer, chosen_automatically)."""
        self._discard_stale()
        suffix = f" [y/n, {timeout}s]" if timeout else " [y/n]"
        self.output_sink(message + suffix)
        while True:
            self._request_line()
            try:
                reply = self._replies.get(timeout=timeout)
            except queue.Empty:
                return default, True
            answer = parse_yes_no(reply) if reply is not None else None
            if answer is not None:
                return answer, False
            # end of input, or a malformed reply to a timed question
            if reply is None or timeout is not None:
                return default, True


@dataclass
class BranchProbes:
    registry: RegistryProbe = field(default_factory=RegistryProbe)
    image: ImageProbe = field(default_factory=ImageProbe)
    network: NetworkProbe = field(default_factory=NetworkProbe)
    prompter: ConsolePrompter = field(default_factory=ConsolePrompter)


# ---- Evaluator ----

def _has_wildcard(path: str) -> bool:
    name = os.path.basename(path)
    return "*" in name or "?" in name


def _wildcard_matches(path: str, want_dirs: bool) -> bool:
    parent = os.path.dirname(path) or "."
    pattern = os.path.basename(path)
    if not os.path.isdir(parent):
        return False
    for entry in os.listdir(parent):
        if not fnmatch.fnmatch(entry.lower(), pattern.lower()):
            continue
        full = os.path.join(parent, entry)
        if os.path.isdir(full) if want_dirs else os.path.isfile(full):
            return True
    return False


def ini_contains_section(path: str, section: str) -> bool:
    try:
        with open(path, "r", encoding="utf-8-sig", errors="replace") as handle:
            lines = handle.read().splitlines()
    except OSError:
        return False
    wanted = section.strip().lower()
    for raw in lines:
        line = raw.strip()
        if line.startswith("[") and line.endswith("]") and line[1:-1].strip().lower() == wanted:
            return True
    return False


class BranchEvaluator:
    """Turns a branch condition into (matched, message).

    `expand` is the argument preprocessor bound to the running instruction.
    The message always describes the un-negated fact; the not flag only
    flips the boolean.
    """

    def __init__(self, variables: Variables, macros: MacroTable, probes: Optional[BranchProbes] = None) -> None:
        self.variables = variables
        self.macros = macros
        self.probes = probes or BranchProbes()
        self._handlers: Dict[str, Callable[[Tuple[str, ...], Callable[[str], str]], Tuple[bool, str]]] = {
            "ExistFile": self._exist_file,
            "ExistDir": self._exist_dir,
            "ExistSection": self._exist_section,
            "ExistRegSubKey": self._exist_reg_subkey,
            "ExistRegValue": self._exist_reg_value,
            "ExistRegMulti": self._exist_reg_multi,
            "ExistVar": self._exist_var,
            "ExistMacro": self._exist_macro,
            "WimExistIndex": self._wim_exist_index,
            "WimExistFile": self._wim_exist_file,
            "WimExistDir": self._wim_exist_dir,
            "WimExistImageInfo": self._wim_exist_image_info,
            "Ping": self._ping,
            "Online": self._online,
            "Question": self._question,
        }

    def evaluate(self, condition: BranchCondition, expand: Callable[[str], str]) -> Tuple[bool, str]:
        if condition.kind in COMPARISON_KINDS:
            return self._compare(condition, expand)
        handler = self._handlers.get(condition.kind)
        if handler is None:
            raise CriticalError(f"Internal error: unknown branch condition [{condition.kind}]", rule="BRANCH")
        matched, message = handler(condition.args, expand)
        if condition.not_flag:
            matched = not matched
        return matched, message

    def _compare(self, condition: BranchCondition, expand: Callable[[str], str]) -> Tuple[bool, str]:
        if len(condition.args) != 2:
            raise CriticalError(f"Comparison [{condition.kind}] requires two operands", rule="BRANCH")
        left = expand(condition.args[0])
        right = expand(condition.args[1])
        result = compare_string_number(left, right, ignore_case=condition.kind != "EqualX")
        message = f"[{left}] {COMPARE_MESSAGES[result]} [{right}]"
        return comparison_matches(condition.kind, condition.not_flag, result), message

    # ---- filesystem ----

    def _exist_file(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        path = expand(args[0])
        if not path:
            matched = False
        elif _has_wildcard(path):
            matched = _wildcard_matches(path, want_dirs=False)
        else:
            matched = os.path.isfile(path)
        return matched, f"File [{path}] exists" if matched else f"File [{path}] does not exist"

    def _exist_dir(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        path = expand(args[0])
        if not path:
            matched = False
        elif _has_wildcard(path):
            matched = _wildcard_matches(path, want_dirs=True)
        else:
            matched = os.path.isdir(path)
        return matched, f"Directory [{path}] exists" if matched else f"Directory [{path}] does not exist"

    def _exist_section(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        ini_file = expand(args[0])
        section = expand(args[1])
        if ini_contains_section(ini_file, section):
            return True, f"Section [{section}] exists in INI file [{ini_file}]"
        return False, f"Section [{section}] does not exist in INI file [{ini_file}]"

    # ---- registry ----

    def _registry_root(self, text: str) -> str:
        root = parse_registry_root(text)
        if root is None:
            raise ExecuteError(f"Invalid registry root key [{text}]")
        return root

    def _exist_reg_subkey(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        root_text, subkey = expand(args[0]), expand(args[1])
        root = self._registry_root(root_text)
        if self.probes.registry.subkey_exists(root, subkey):
            return True, f"Registry SubKey [{root_text}\\{subkey}] exists"
        return False, f"Registry SubKey [{root_text}\\{subkey}] does not exist"

    def _exist_reg_value(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        root_text, subkey, name = expand(args[0]), expand(args[1]), expand(args[2])
        root = self._registry_root(root_text)
        if self.probes.registry.read_value(root, subkey, name) is not None:
            return True, f"Registry Value [{root_text}\\{subkey}\\{name}] exists"
        return False, f"Registry Value [{root_text}\\{subkey}\\{name}] does not exist"

    def _exist_reg_multi(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        root_text, subkey, name, item = (expand(arg) for arg in args[:4])
        root = self._registry_root(root_text)
        registry = self.probes.registry
        if not registry.subkey_exists(root, subkey):
            return False, f"Registry SubKey [{root_text}\\{subkey}] does not exist"
        value = registry.read_value(root, subkey, name)
        label = f"Registry Value [{root_text}\\{subkey}\\{name}]"
        if value is None:
            return False, f"{label} does not exist"
        data, value_type = value
        if not registry.is_multi_string(value_type):
            return False, f"{label} is not REG_MULTI_SZ"
        entries = [str(entry).upper() for entry in (data or [])]
        if item.upper() in entries:
            return True, f"{label} contains substring [{item}]"
        return False, f"{label} does not contain substring [{item}]"

    # ---- variables and macros ----

    def _exist_var(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        key = args[0].strip()
        if not (key.startswith("%") and key.endswith("%") and len(key) > 1):
            return False, f"[{key}] is not a variable"
        name = trim_percent(key)
        if name is None:
            return False, f"Variable key [{key}] is not a valid variable format"
        if self.variables.exists(name):
            return True, f"Variable [{key}] exists"
        return False, f"Variable [{key}] does not exist"

    def _exist_macro(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        name = expand(args[0])
        if self.macros.exists(name):
            return True, f"Macro [{name}] exists"
        return False, f"Macro [{name}] does not exist"

    # ---- disk images ----

    def _image_index(self, text: str) -> Optional[int]:
        index = parse_int32(text)
        if index is None or index < 1:
            return None
        return index

    def _wim_exist_index(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        wim_file, index_text = expand(args[0]), expand(args[1])
        index = self._image_index(index_text)
        if index is None:
            return False, f"Index [{index_text}] is not a positive integer"
        if not os.path.isfile(wim_file):
            return False, f"Wim file [{wim_file}] does not exist"
        try:
            count = self.probes.image.image_count(wim_file)
        except ImageError as exc:
            return False, f"Error [{exc.name}] occured while handling [{wim_file}]"
        if index <= count:
            return True, f"ImageIndex [{index}] exists in [{wim_file}]"
        return False, f"ImageIndex [{index}] does not exist in [{wim_file}]"

    def _wim_exist_path(self, args: Tuple[str, ...], expand: Callable[[str], str], want: str) -> Tuple[bool, str]:
        wim_file, index_text, inner = expand(args[0]), expand(args[1]), expand(args[2])
        label = "Dir" if want == "dir" else "File"
        index = self._image_index(index_text)
        if index is None:
            return False, f"Index [{index_text}] is not a positive integer"
        if not os.path.isfile(wim_file):
            return False, f"Wim file [{wim_file}] does not exist"
        try:
            kind = self.probes.image.path_kind(wim_file, index, inner)
        except ImageError as exc:
            if exc.code == WIMLIB_INVALID_IMAGE:
                return False, f"{label} [{inner}] does not have image index [{index}]"
            if exc.code == WIMLIB_PATH_DOES_NOT_EXIST:
                return False, f"{label} [{inner}] does not exist in [{wim_file}]"
            return False, f"Error [{exc.name}] occured while handling [{wim_file}]"
        if kind == want:
            return True, f"{label} [{inner}] exists in [{wim_file}]"
        return False, f"{label} [{inner}] does not exist in [{wim_file}]"

    def _wim_exist_file(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        return self._wim_exist_path(args, expand, "file")

    def _wim_exist_dir(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        return self._wim_exist_path(args, expand, "dir")

    def _wim_exist_image_info(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        wim_file, index_text, key = expand(args[0]), expand(args[1]), expand(args[2]).upper()
        index = self._image_index(index_text)
        if index is None:
            return False, f"Index [{index_text}] is not a positive integer"
        if not os.path.isfile(wim_file):
            return False, f"Wim file [{wim_file}] does not exist"
        try:
            value = self.probes.image.image_property(wim_file, index, key)
        except ImageError as exc:
            return False, f"Error [{exc.name}] occured while handling [{wim_file}]"
        if value is not None:
            return True, f"Key [{key}] exists in [{wim_file}:{index}]"
        return False, f"Key [{key}] does not exist in [{wim_file}:{index}]"

    # ---- network and prompt ----

    def _ping(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        host = expand(args[0])
        try:
            responded = self.probes.network.ping(host)
        except OSError as exc:
            return False, f"Error while pinging [{host}] : [{exc}]"
        if responded:
            return True, f"[{host}] responded to Ping"
        return False, f"[{host}] did not respond to Ping"

    def _online(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        if self.probes.network.online():
            return True, "Network is online"
        return False, "Network is offline"

    def _question(self, args: Tuple[str, ...], expand: Callable[[str], str]) -> Tuple[bool, str]:
        message = expand(args[0])
        timeout: Optional[int] = None
        default = False
        if len(args) == 3:
            parsed = parse_int32(expand(args[1]))
            if parsed is not None and parsed > 0:
                timeout = parsed
            default_text = expand(args[2]).strip().lower()
            if default_text == "true":
                default = True
        answer, automatic = self.probes.prompter.ask(message, timeout, default)
        choice = "Yes" if answer else "No"
        if automatic:
            return answer, f"[{choice}] was automatically chosen"
        return answer, f"[{choice}] was chosen"
