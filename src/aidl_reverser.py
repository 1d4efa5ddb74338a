#!/usr/bin/env python3
"""
AIDL reverser for Android binder services
Rebuilds an AIDL interface definition from a running service's transaction
codes and the framework classes behind it
"""
import argparse
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from aidl_sources import (
    AdbServiceRegistry,
    DuplicateCodeError,
    FieldAccessError,
    InvalidTransactionNameError,
    NoInterfaceError,
    NotFoundError,
    RemoteCommunicationError,
    ReverserError,
    ServiceListRegistry,
    ServiceNotFoundError,
    SmaliTypeIntrospector,
    TypeRef,
)
import aidl_sources

logger = logging.getLogger(__name__)

VERSION = '1.0.0'

# Namespaces searched for services that report a simple interface name
# instead of a fully qualified one.
NAMESPACE_PREFIXES = (
    '',
    'android.os.',
    'android.os.storage.',
    'android.service.',
    'android.service.notification.',
    'android.service.textservice.',
    'android.accessibilityservice.',
)

# Services whose transaction constants are declared on the interface itself
# rather than on its nested Stub (IActivityManager style).
SELF_STUB_SERVICES = frozenset({'activity'})

REMOTE_EXCEPTION_TYPES = frozenset({'android.os.RemoteException'})

IMPLICIT_NAMESPACE = 'java.lang'

# (service name, mechanically derived name) -> real method name
METHOD_NAME_QUIRKS = {
    ('activity', 'clearAppData'): 'clearApplicationUserData',
    ('activity', 'getDeviceConfiguration'): 'getDeviceConfigurationInfo',
    ('activity', 'startBackupAgent'): 'bindBackupAgent',
}

TRANSACTION_PREFIX = 'TRANSACTION_'
TRANSACTION_SUFFIX = '_TRANSACTION'

# Decimal only, no whitespace or underscores: anything else is a method name
re_transaction_code_arg = re.compile(r'[+-]?[0-9]+')


# Data structures
@dataclass(frozen=True)
class TransactionEntry:
    code: int
    raw_name: str


@dataclass(frozen=True)
class ResolvedMethod:
    code: int
    name: str
    return_type: TypeRef
    params: Tuple[Tuple[TypeRef, str], ...] = ()

    @property
    def param_types(self):
        return tuple(t for t, _ in self.params)


@dataclass(frozen=True)
class RenderFilter:
    """Selects a single method by name or by transaction code."""
    method_name: Optional[str] = None
    code: Optional[int] = None

    def __post_init__(self):
        if self.method_name is not None and self.code is not None:
            raise ValueError('Filter by method name or by code, not both')

    @classmethod
    def from_arg(cls, arg):
        """Build a filter from a command-line argument: integers are codes."""
        if arg is None:
            return None
        if re_transaction_code_arg.fullmatch(arg):
            return cls(code=int(arg))
        return cls(method_name=arg)

    def __bool__(self):
        return self.method_name is not None or self.code is not None

    def matches(self, code, name):
        if self.code is not None and code != self.code:
            return False
        if self.method_name is not None and name != self.method_name:
            return False
        return True


@dataclass
class ServiceInterface:
    """Everything recovered for one service."""
    service_name: str
    interface_id: str
    qualified_name: str
    package: str
    simple_name: str
    methods: List[ResolvedMethod] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------

def probe_service_type(interface_id, introspector, prefixes=NAMESPACE_PREFIXES):
    """Load the type for an interface id, trying each namespace prefix in order."""
    for prefix in prefixes:
        try:
            return introspector.load_type(prefix + interface_id)
        except NotFoundError:
            continue
    raise NotFoundError(f'Class not found for {interface_id} (C++ services not supported)')


def looks_like_transaction_code(name):
    return name.startswith(TRANSACTION_PREFIX) or name.endswith(TRANSACTION_SUFFIX)


def extract_transaction_table(stub_type, diagnostics=None) -> Dict[int, TransactionEntry]:
    """Map transaction codes to their constants, in ascending code order."""
    table = {}
    for fld in stub_type.declared_static_fields():
        if fld.type.canonical_name != 'int' or not looks_like_transaction_code(fld.name):
            continue
        fld.set_accessible(True)
        try:
            code = fld.read()
        except FieldAccessError as e:
            logger.debug('Skipping %s: %s', fld.name, e)
            if diagnostics is not None:
                diagnostics.append(f'unreadable field {fld.name}: {e}')
            continue
        if code in table:
            raise DuplicateCodeError(
                f'Transaction code {code} used by both {table[code].raw_name} and {fld.name} '
                f'in {stub_type.name}')
        table[code] = TransactionEntry(code, fld.name)
    return dict(sorted(table.items()))


def camel_case(snake_str):
    """ALL_CAPS_WORDS -> allCapsWords"""
    parts = [p for p in snake_str.split('_') if p]
    if not parts:
        return ''
    return parts[0].lower() + ''.join(p[:1].upper() + p[1:].lower() for p in parts[1:])


def method_name_for_transaction(service_name, transaction_name, quirks=None):
    """Derive the method name a transaction constant stands for."""
    if transaction_name.startswith(TRANSACTION_PREFIX):
        name = transaction_name[len(TRANSACTION_PREFIX):]
        if name:
            return name
    elif transaction_name.endswith(TRANSACTION_SUFFIX):
        # IActivityManager style: START_ACTIVITY_TRANSACTION
        name = camel_case(transaction_name[:-len(TRANSACTION_SUFFIX)])
        if name:
            quirks = METHOD_NAME_QUIRKS if quirks is None else quirks
            return quirks.get((service_name, name), name)
    raise InvalidTransactionNameError(
        f"Codename doesn't look like a transaction code constant: {transaction_name}")


def is_remote_invocable(method, remote_exceptions=REMOTE_EXCEPTION_TYPES):
    return any(t.canonical_name in remote_exceptions for t in method.exception_types)


def param_names(param_types):
    """Positional names: n<N> for int/long, s<N> for String, p<N> otherwise."""
    names = []
    for n, t in enumerate(param_types, start=1):
        if t.canonical_name in ('int', 'long'):
            names.append(f'n{n}')
        elif t.canonical_name == 'java.lang.String':
            names.append(f's{n}')
        else:
            names.append(f'p{n}')
    return names


def correlate_methods(service_name, service_type, table, render_filter=None,
                      quirks=None, diagnostics=None) -> List[ResolvedMethod]:
    """Join the transaction table with the methods the interface declares."""
    declared = {}
    for m in service_type.declared_methods():
        declared.setdefault(m.name, m)

    resolved = []
    for entry in table.values():
        code, raw_name = entry.code, entry.raw_name
        try:
            name = method_name_for_transaction(service_name, raw_name, quirks)
        except InvalidTransactionNameError as e:
            logger.debug('Skipping %s: %s', raw_name, e)
            if diagnostics is not None:
                diagnostics.append(f'bad transaction name: {raw_name} ({code})')
            continue
        if render_filter and not render_filter.matches(code, name):
            continue
        method = declared.get(name)
        if method is None:
            logger.debug('No method %s for transaction %s (%d)', name, raw_name, code)
            if diagnostics is not None:
                diagnostics.append(f'could not find method: {name} ({code})')
            continue
        if not is_remote_invocable(method):
            logger.debug('Skipping local method %s', name)
            if diagnostics is not None:
                diagnostics.append(f'not a remote method: {name} ({code})')
            continue
        params = tuple(zip(method.param_types, param_names(method.param_types)))
        resolved.append(ResolvedMethod(code, method.name, method.return_type, params))
    return resolved


def reverse_service(service_name, registry, introspector, render_filter=None,
                    quirks=None) -> ServiceInterface:
    """Rebuild the interface of one service without printing anything."""
    handle = registry.resolve(service_name)
    if not handle.has_interface():
        raise NoInterfaceError(f"No interface descriptor returned for service: '{service_name}'")

    service_type = probe_service_type(handle.interface_id, introspector)
    if service_name in SELF_STUB_SERVICES:
        stub_type = service_type
    else:
        stub_type = introspector.load_type(service_type.name + '$Stub')

    qualified = service_type.canonical_name
    package = qualified.rsplit('.', 1)[0] if '.' in qualified else ''
    iface = ServiceInterface(service_name, handle.interface_id, qualified, package,
                             service_type.simple_name)

    table = extract_transaction_table(stub_type, iface.diagnostics)
    logger.debug('%s: %d transaction codes', service_name, len(table))
    iface.methods = correlate_methods(service_name, service_type, table, render_filter,
                                      quirks, iface.diagnostics)
    return iface


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def simplify_type(type_ref, package, imports):
    """Short name for a type; foreign class types are added to ``imports``."""
    name = type_ref.canonical_name
    if name.startswith(IMPLICIT_NAMESPACE) or (package and name.startswith(package)):
        return type_ref.simple_name
    if not (type_ref.is_primitive or type_ref.is_array):
        imports.add(name)
    return type_ref.simple_name


def method_signature(method, package, imports, show_codes=False):
    params = ', '.join(f'{simplify_type(t, package, imports)} {pname}'
                       for t, pname in method.params)
    line = (f'{simplify_type(method.return_type, package, imports)} '
            f'{method.name}({params}) throws RemoteException;')
    if show_codes:
        line += f' // {method.code}'
    return line


def render_interface(iface, render_filter=None, show_codes=False):
    """Render AIDL text: the whole interface, or only the filtered methods."""
    imports = set()
    methods = iface.methods
    if render_filter:
        methods = [m for m in methods if render_filter.matches(m.code, m.name)]
    signatures = [method_signature(m, iface.package, imports, show_codes) for m in methods]

    if render_filter:
        return '\n\n'.join(signatures)

    lines = [f'// Service: {iface.service_name}, Interface: {iface.interface_id}']
    if iface.package:
        lines.append(f'package {iface.package};')
        lines.append('')
    if imports:
        lines.extend(f'import {imp};' for imp in sorted(imports))
        lines.append('')
    lines.append(f'interface {iface.simple_name} {{')
    if signatures:
        lines.append('\n\n'.join(f'    {sig}' for sig in signatures))
    lines.append('}')
    return '\n'.join(lines)


def render_json(iface):
    imports = set()
    methods = []
    for m in iface.methods:
        methods.append({
            'code': m.code,
            'name': m.name,
            'return_type': m.return_type.canonical_name,
            'params': [{'type': t.canonical_name, 'name': n} for t, n in m.params],
            'signature': method_signature(m, iface.package, imports),
        })
    doc = {
        'service': iface.service_name,
        'interface': iface.interface_id,
        'package': iface.package,
        'imports': sorted(imports),
        'methods': methods,
        'diagnostics': list(iface.diagnostics),
    }
    return json.dumps(doc, indent=2)


def list_services(registry):
    """One ``name: interface`` line per registered service."""
    lines = []
    for name in registry.list_names():
        handle = registry.resolve(name)
        if handle.has_interface():
            lines.append(f'{name}: {handle.interface_id}')
        else:
            lines.append(f'{name}: No Interface')
    return lines


# ---------------------------------------------------------------------------
# Quirks configuration
# ---------------------------------------------------------------------------

def load_quirks(path, base=None):
    """Extend the quirks table from a JSON file.

    Accepts ``[{"service": s, "name": derived, "method": real}, ...]`` or
    ``{"service": {"derived": "real"}}``. Existing entries always win.
    """
    quirks = dict(METHOD_NAME_QUIRKS if base is None else base)
    data = json.loads(Path(path).read_text(encoding='utf-8'))
    if isinstance(data, dict):
        items = [(svc, k, v) for svc, mapping in data.items() for k, v in mapping.items()]
    else:
        items = [(q['service'], q['name'], q['method']) for q in data]
    for svc, derived, real in items:
        key = (svc, derived)
        if key in quirks and quirks[key] != real:
            logger.warning('Ignoring quirk %s/%s -> %s, already mapped to %s',
                           svc, derived, real, quirks[key])
            continue
        quirks[key] = real
    return quirks


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(
        prog='aidl-reverser',
        description='Rebuild the AIDL interface of a running Android binder service.',
    )
    parser.add_argument('service', nargs='?', help='service name, as shown by --list')
    parser.add_argument('method', nargs='?',
                        help='only show this method (a name, or a transaction code)')
    parser.add_argument('-v', '--version', action='store_true', help='show version and exit')
    parser.add_argument('-l', '--list', action='store_true', help='list services and exit')
    parser.add_argument('-n', '--codes', action='store_true', help='show transaction codes')
    parser.add_argument('--json', action='store_true', help='JSON output')
    parser.add_argument('-d', '--debug', action='store_true', help='verbose logging')

    src = parser.add_argument_group('Sources')
    src.add_argument('--smali-root', action='append', type=Path, metavar='DIR',
                     help='smali tree of the framework classes (repeatable)')
    src.add_argument('--service-list', type=Path, metavar='FILE',
                     help="saved 'service list' output instead of a live device")
    src.add_argument('-s', '--serial', help='adb device serial')
    src.add_argument('--adb', help='adb binary')
    src.add_argument('--quirks', type=Path, metavar='FILE',
                     help='JSON file with extra transaction name quirks')
    return parser


def show_version():
    print(f'aidl-reverser: version {VERSION}')
    return 0


def make_registry(args):
    if args.service_list:
        return ServiceListRegistry.from_file(args.service_list)
    return AdbServiceRegistry(serial=args.serial, adb=args.adb)


def run_list(registry):
    try:
        lines = list_services(registry)
    except ReverserError as e:
        print(f'Error listing services: {e}', file=sys.stderr)
        return 1
    for line in lines:
        print(line)
    return 0


def run_reverse(args, registry, introspector, quirks=None):
    render_filter = RenderFilter.from_arg(args.method)
    try:
        iface = reverse_service(args.service, registry, introspector, render_filter, quirks)
    except RemoteCommunicationError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1
    except ServiceNotFoundError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1
    except NotFoundError as e:
        print(f"Failed to load class for service '{args.service}': {e}", file=sys.stderr)
        return 1
    except (NoInterfaceError, DuplicateCodeError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    for note in iface.diagnostics:
        logger.info('%s: %s', args.service, note)
    if args.json:
        print(render_json(iface))
    else:
        out = render_interface(iface, render_filter, args.codes)
        if out:
            print(out)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format='%(levelname)s: %(message)s',
        stream=sys.stderr,
    )

    if args.version:
        return show_version()

    try:
        registry = make_registry(args) if (args.list or args.service) else None
    except RemoteCommunicationError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    if args.list:
        return run_list(registry)
    if not args.service:
        return show_version()

    quirks = None
    if args.quirks:
        try:
            quirks = load_quirks(args.quirks)
        except (OSError, ValueError, KeyError, TypeError) as e:
            print(f'Error: cannot read quirks file {args.quirks}: {e}', file=sys.stderr)
            return 1

    roots = args.smali_root if args.smali_root else aidl_sources.SMALI_ROOTS
    introspector = SmaliTypeIntrospector(roots)
    return run_reverse(args, registry, introspector, quirks)


if __name__ == '__main__':
    sys.exit(main())
