"""
Data sources for the AIDL reverser.

Service registry adapters (``service list`` output, saved dumps, live adb)
and a type introspector that answers reflection queries from smali
disassembly (apktool / baksmali output of framework.jar and friends).
"""
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Configuration (patch-friendly for tests)
SMALI_ROOTS = [Path(p) for p in os.environ.get('AIDL_SMALI_ROOTS', 'smali').split(os.pathsep) if p]
ADB_PATH = os.environ.get('ADB', 'adb')


class ReverserError(Exception):
    """Base class for every error raised while reversing a service."""


class NotFoundError(ReverserError):
    """A service, class or type could not be located."""


class ServiceNotFoundError(NotFoundError):
    """The service registry has no service by that name."""


class NoInterfaceError(ReverserError):
    """The service reported an empty interface descriptor."""


class DuplicateCodeError(ReverserError):
    """Two transaction constants share the same code."""


class InvalidTransactionNameError(ReverserError, ValueError):
    """A constant name does not look like a transaction code."""


class FieldAccessError(ReverserError):
    """A static field could not be read."""


class RemoteCommunicationError(ReverserError):
    """The service registry (or the device behind it) could not be reached."""


@dataclass(frozen=True)
class TypeRef:
    canonical_name: str
    simple_name: str
    is_primitive: bool = False
    is_array: bool = False

    def __str__(self):
        return self.canonical_name


@dataclass(frozen=True)
class ServiceHandle:
    name: str
    interface_id: str

    def has_interface(self):
        return self.interface_id != ''


# ---------------------------------------------------------------------------
# Service registry
# ---------------------------------------------------------------------------

# `service list` prints "Found N services:" then lines like
#   12	activity: [android.app.IActivityManager]
re_service_line = re.compile(r'^\s*\d+\s+(.+?):\s+\[(.*)\]\s*$')


def parse_service_list(text):
    """Parse ``service list`` output into ``ServiceHandle`` objects, in order."""
    handles = []
    for line in text.splitlines():
        m = re_service_line.match(line)
        if not m:
            continue
        handles.append(ServiceHandle(m.group(1), m.group(2).strip()))
    return handles


class ServiceListRegistry:
    """Registry backed by already captured ``service list`` output."""

    def __init__(self, handles):
        self._handles = list(handles)

    @classmethod
    def from_text(cls, text):
        return cls(parse_service_list(text))

    @classmethod
    def from_file(cls, path):
        path = Path(path)
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise RemoteCommunicationError(f'Cannot read service list {path}: {e}') from e
        return cls.from_text(text)

    def _entries(self) -> List[ServiceHandle]:
        return self._handles

    def list_names(self) -> List[str]:
        return [h.name for h in self._entries()]

    def resolve(self, name: str) -> ServiceHandle:
        for h in self._entries():
            if h.name == name:
                return h
        raise ServiceNotFoundError(f'Unable to get service: {name}')


class AdbServiceRegistry(ServiceListRegistry):
    """Registry that asks a device through ``adb shell service list``.

    The device is queried once, on first use.
    """

    def __init__(self, serial=None, adb=None):
        super().__init__([])
        self.serial = serial
        self.adb = adb or ADB_PATH
        self._loaded = False

    def command(self):
        cmd = [self.adb]
        if self.serial:
            cmd += ['-s', self.serial]
        return cmd + ['shell', 'service', 'list']

    def _entries(self):
        if not self._loaded:
            self._handles = parse_service_list(self._run())
            self._loaded = True
        return self._handles

    def _run(self):
        cmd = self.command()
        logger.debug('Running %s', ' '.join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError as e:
            raise RemoteCommunicationError(f'adb not found: {self.adb}') from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or '').strip() or f'exit status {e.returncode}'
            raise RemoteCommunicationError(f'Error listing services: {detail}') from e
        return proc.stdout


# ---------------------------------------------------------------------------
# Smali type introspection
# ---------------------------------------------------------------------------

re_smali_class = re.compile(r'^\.class\s+(?:[\w-]+\s+)*L([^;]+);')
re_smali_field = re.compile(r'^\.field\s+((?:[\w-]+\s+)*)([^\s:]+):(\S+)(?:\s*=\s*(\S+))?')
re_smali_method = re.compile(r'^\.method\s+((?:[\w-]+\s+)*)([^\s(]+)\((.*)\)(\S+)$')
re_smali_class_desc = re.compile(r'L[^;]+;')

PRIMITIVE_DESCRIPTORS = {
    'V': 'void', 'Z': 'boolean', 'B': 'byte', 'S': 'short', 'C': 'char',
    'I': 'int', 'J': 'long', 'F': 'float', 'D': 'double',
}

THROWS_ANNOTATION = 'Ldalvik/annotation/Throws;'


def split_descriptors(desc):
    """Split a concatenated parameter descriptor ("ILjava/lang/String;[J")."""
    parts = []
    i = 0
    while i < len(desc):
        start = i
        while i < len(desc) and desc[i] == '[':
            i += 1
        if i >= len(desc):
            raise ValueError(f'Bad type descriptor: {desc!r}')
        if desc[i] == 'L' and ';' in desc[i:]:
            i = desc.index(';', i) + 1
        elif desc[i] in PRIMITIVE_DESCRIPTORS:
            i += 1
        else:
            raise ValueError(f'Bad type descriptor: {desc!r}')
        parts.append(desc[start:i])
    return parts


def descriptor_to_type(desc: str) -> TypeRef:
    """Turn a smali type descriptor into a ``TypeRef``.

    ``Lcom/foo/Outer$Inner;`` becomes canonical ``com.foo.Outer.Inner`` with
    simple name ``Inner``; arrays keep their ``[]`` suffixes.
    """
    dims = len(desc) - len(desc.lstrip('['))
    base = desc[dims:]
    if base in PRIMITIVE_DESCRIPTORS:
        canonical = simple = PRIMITIVE_DESCRIPTORS[base]
        primitive = dims == 0
    elif base.startswith('L') and base.endswith(';'):
        binary = base[1:-1].replace('/', '.')
        canonical = binary.replace('$', '.')
        simple = binary.rsplit('.', 1)[-1].rsplit('$', 1)[-1]
        primitive = False
    else:
        raise ValueError(f'Bad type descriptor: {desc!r}')
    suffix = '[]' * dims
    return TypeRef(canonical + suffix, simple + suffix, primitive, dims > 0)


def _parse_literal(value):
    # baksmali suffixes: L (long), t (byte), s (short)
    if value is None:
        return None
    v = value.rstrip('Lts')
    try:
        return int(v, 0)
    except ValueError:
        return None


class SmaliField:
    def __init__(self, owner, name, type_ref, flags, literal):
        self.owner = owner
        self.name = name
        self.type = type_ref
        self.flags = flags
        self.literal = literal
        self.accessible = 'public' in flags

    @property
    def is_static(self):
        return 'static' in self.flags

    def set_accessible(self, flag=True):
        self.accessible = flag

    def read(self) -> int:
        if not self.accessible:
            raise FieldAccessError(f'{self.owner}.{self.name} is not accessible')
        value = _parse_literal(self.literal)
        if value is None:
            raise FieldAccessError(f'{self.owner}.{self.name} has no constant value')
        return value

    def __repr__(self):
        return f'SmaliField({self.owner}.{self.name}:{self.type})'


class SmaliMethod:
    def __init__(self, name, return_type, param_types, flags):
        self.name = name
        self.return_type = return_type
        self.param_types = param_types
        self.flags = flags
        self.exception_types = []

    def __repr__(self):
        params = ', '.join(str(p) for p in self.param_types)
        return f'SmaliMethod({self.return_type} {self.name}({params}))'


class SmaliClass:
    """One class parsed from a ``.smali`` file."""

    def __init__(self, name, path=None):
        self.name = name  # binary name, e.g. android.os.IPowerManager$Stub
        self.path = path
        self.fields = []
        self.methods = []

    @property
    def canonical_name(self):
        return self.name.replace('$', '.')

    @property
    def simple_name(self):
        return self.name.rsplit('.', 1)[-1].rsplit('$', 1)[-1]

    @property
    def package(self):
        return self.name.rsplit('.', 1)[0] if '.' in self.name else ''

    def declared_static_fields(self):
        return [f for f in self.fields if f.is_static]

    def declared_methods(self):
        return list(self.methods)

    def __repr__(self):
        return f'SmaliClass({self.name})'


def parse_smali(text, path=None):
    """Parse the parts of a smali class the reverser needs."""
    cls = None
    method = None
    in_throws = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if cls is None:
            m = re_smali_class.match(line)
            if m:
                cls = SmaliClass(m.group(1).replace('/', '.'), path)
            continue
        if method is not None:
            if line.startswith('.end method'):
                cls.methods.append(method)
                method = None
            elif line.startswith('.annotation') and THROWS_ANNOTATION in line:
                in_throws = True
            elif line.startswith('.end annotation'):
                in_throws = False
            elif in_throws:
                for d in re_smali_class_desc.findall(line):
                    method.exception_types.append(descriptor_to_type(d))
            continue
        m = re_smali_field.match(line)
        if m:
            flags = m.group(1).split()
            cls.fields.append(SmaliField(cls.name, m.group(2), descriptor_to_type(m.group(3)),
                                         flags, m.group(4)))
            continue
        m = re_smali_method.match(line)
        if m:
            flags = m.group(1).split()
            params = [descriptor_to_type(d) for d in split_descriptors(m.group(3))]
            method = SmaliMethod(m.group(2), descriptor_to_type(m.group(4)), params, flags)
            in_throws = False
    if cls is None:
        raise ValueError(f'No .class directive in {path or "smali source"}')
    return cls


re_smali_classes_dir = re.compile(r'^smali_classes(\d+)$')


def _dex_index(path):
    m = re_smali_classes_dir.match(path.name)
    return int(m.group(1)) if m else None


def _iter_existing_smali_roots(roots=None):
    """Yield every existing smali directory: each root plus, when a root is an
    apktool project, its primary ``smali`` and then ``smali_classesN`` by N."""
    for root in roots if roots is not None else SMALI_ROOTS:
        root = Path(root)
        if root.is_dir():
            yield root
        secondary = sorted((p for p in root.glob('smali_classes*') if _dex_index(p) is not None),
                           key=_dex_index)
        for extra in [root / 'smali'] + secondary:
            if extra.is_dir() and extra != root:
                yield extra


class SmaliTypeIntrospector:
    """Type introspector backed by smali disassembly."""

    def __init__(self, roots=None):
        self.roots = list(roots) if roots is not None else list(SMALI_ROOTS)
        self._classes = {}

    def find_class_file(self, qualified_name) -> Optional[Path]:
        rel = Path(*qualified_name.split('.')).with_suffix('.smali')
        for root in _iter_existing_smali_roots(self.roots):
            candidate = root / rel
            if candidate.is_file():
                return candidate
        return None

    def load_type(self, qualified_name: str) -> SmaliClass:
        if qualified_name in self._classes:
            return self._classes[qualified_name]
        if not qualified_name or qualified_name.endswith('.'):
            raise NotFoundError(f'Class not found: {qualified_name!r}')
        path = self.find_class_file(qualified_name)
        if path is None:
            raise NotFoundError(f'Class not found: {qualified_name}')
        try:
            cls = parse_smali(path.read_text(encoding='utf-8'), path)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            raise NotFoundError(f'Cannot load {qualified_name} from {path}: {e}') from e
        logger.debug('Loaded %s from %s (%d fields, %d methods)',
                     cls.name, path, len(cls.fields), len(cls.methods))
        self._classes[qualified_name] = cls
        return cls

