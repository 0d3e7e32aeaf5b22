#!/usr/bin/env python3
import os, sys, re, math, struct, logging, argparse, weakref
import platform
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import List, Dict, Optional, Tuple, Union, Set, Callable, FrozenSet

from ply.lex import lex, TOKEN
from ply.yacc import yacc
from llvmlite import binding

LOGGER = logging.getLogger("procgen")

INDENT = "    "

# ============================================================
# Diagnostics
# ============================================================

@dataclass
class Source:
    path: str
    text: str
    lines: List[str]

    @staticmethod
    def from_path(path: str) -> "Source":
        with open(path, "r", encoding="utf-8") as f:
            txt = f.read()
        return Source(path=os.path.abspath(path), text=txt, lines=txt.splitlines())

    @staticmethod
    def from_text(text: str, path: str = "<input>") -> "Source":
        return Source(path=path, text=text, lines=text.splitlines())

    def line_col(self, lexpos: int) -> Tuple[int, int]:
        line = self.text.count("\n", 0, lexpos) + 1
        bol = self.text.rfind("\n", 0, lexpos)
        if bol < 0: bol = -1
        col = lexpos - bol
        return line, col

    def line_offsets(self) -> List[int]:
        offsets, pos = [], 0
        for raw in self.text.splitlines(keepends=True):
            offsets.append(pos)
            pos += len(raw)
        return offsets

@dataclass
class Diag:
    kind: str  # "error" | "warning"
    msg: str
    src: Source
    lexpos: int
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        line, col = self.src.line_col(self.lexpos)
        code = self.src.lines[line - 1] if 1 <= line <= len(self.src.lines) else ""

        if use_color:
            RESET, BOLD, RED, YELLOW, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[33m", "\033[34m", "\033[36m"
            arrow_color = RED if self.kind == "error" else YELLOW
            kind_color = f"{BOLD}{arrow_color}"
        else:
            RESET = BOLD = RED = YELLOW = BLUE = CYAN = kind_color = arrow_color = ""

        header = f"{kind_color}{self.kind}{RESET}{BOLD}: {self.msg}{RESET}"
        location = f"{BOLD}{BLUE}-->{RESET} {self.src.path}:{line}:{col}"

        width = len(str(line))
        line_prefix = f"{BOLD}{BLUE}{line:>{width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * width} |{RESET}"
        caret = " " * (col - 1) + f"{BOLD}{arrow_color}^~~~{RESET}"

        result = f"{header}\n{location}\n{empty_prefix}\n{line_prefix}{code}\n{empty_prefix} {caret}"
        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"
        return result

class ErrorSink:
    def __init__(self, use_color: bool = True) -> None:
        self.use_color = use_color
        self.errors: List[Diag] = []
        self.warnings: List[Diag] = []

    def error(self, msg: str, src: Source, lexpos: int, hint: Optional[str] = None):
        self.errors.append(Diag("error", msg, src, lexpos, hint))

    def warning(self, msg: str, src: Source, lexpos: int, hint: Optional[str] = None):
        self.warnings.append(Diag("warning", msg, src, lexpos, hint))

    def ok(self) -> bool:
        return not self.errors

    def dump(self, stream=None):
        stream = stream or sys.stdout
        for e in self.errors:
            print(e.format(self.use_color), file=stream)
            print(file=stream)
        for w in self.warnings:
            print(w.format(self.use_color), file=stream)
            print(file=stream)

# ============================================================
# Errors
# ============================================================

class GenerationError(Exception):
    """Base for every translation-time failure.

    ``pos`` is relative to the line being translated until the driver
    anchors it to the unit text; ``located`` tells the two apart.
    """

    def __init__(self, msg: str, pos: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(msg)
        self.msg = msg
        self.pos = pos
        self.hint = hint
        self.located = False

    def anchor(self, absolute: int) -> "GenerationError":
        if not self.located:
            self.pos = absolute
            self.located = True
        return self

class UnknownConventionError(GenerationError):
    pass

class InvalidArgumentSpecifierError(GenerationError):
    pass

class FrameModeMismatchError(GenerationError):
    pass

class UnresolvedNestedNameError(GenerationError):
    pass

class VaListConflictError(GenerationError):
    pass

class DirectiveSyntaxError(GenerationError):
    pass

# ============================================================
# Target: registers, sizes, architectures
# ============================================================

@dataclass(frozen=True)
class Register:
    name: str
    family: str
    bits: int
    sse: bool = False
    high: bool = False

    @property
    def size(self) -> int:
        return self.bits // 8

def _make_registers(bits: int) -> List[Register]:
    regs: List[Register] = []
    for fam in ("a", "b", "c", "d"):
        regs += [Register(f"e{fam}x", fam, 32), Register(f"{fam}x", fam, 16),
                 Register(f"{fam}l", fam, 8), Register(f"{fam}h", fam, 8, high=True)]
        if bits == 64:
            regs.append(Register(f"r{fam}x", fam, 64))
    for fam in ("si", "di", "bp", "sp"):
        regs += [Register(f"e{fam}", fam, 32), Register(fam, fam, 16)]
        if bits == 64:
            regs += [Register(f"r{fam}", fam, 64), Register(f"{fam}l", fam, 8)]
    if bits == 64:
        for n in range(8, 16):
            fam = f"r{n}"
            regs += [Register(fam, fam, 64), Register(f"r{n}d", fam, 32),
                     Register(f"r{n}w", fam, 16), Register(f"r{n}b", fam, 8)]
    for n in range(8 if bits == 32 else 16):
        regs.append(Register(f"xmm{n}", f"xmm{n}", 128, sse=True))
    return regs

class SizeSpec(Enum):
    QWORD = "qword"
    DWORD = "dword"
    WORD = "word"
    BYTE = "byte"
    DOUBLE = "double"
    FLOAT = "float"
    REAL = "real"

    @property
    def size(self) -> int:
        return SPEC_SIZES[self]

    @property
    def is_float(self) -> bool:
        return self in (SizeSpec.DOUBLE, SizeSpec.FLOAT, SizeSpec.REAL)

SPEC_SIZES = {
    SizeSpec.QWORD: 8, SizeSpec.DWORD: 4, SizeSpec.WORD: 2, SizeSpec.BYTE: 1,
    SizeSpec.DOUBLE: 8, SizeSpec.FLOAT: 4, SizeSpec.REAL: 10,
}

# operand size keywords understood by the assembler
PTR_PREFIX = {1: "byte", 2: "word", 4: "dword", 8: "qword", 10: "tword"}

DATA_DIRECTIVE = {
    SizeSpec.BYTE: "db", SizeSpec.WORD: "dw", SizeSpec.DWORD: "dd", SizeSpec.QWORD: "dq",
    SizeSpec.FLOAT: "dd", SizeSpec.DOUBLE: "dq", SizeSpec.REAL: "dt",
}

# fixed parameter/local type tags
TYPE_SPECS = {
    "BYTE": SizeSpec.BYTE, "WORD": SizeSpec.WORD, "DWORD": SizeSpec.DWORD, "QWORD": SizeSpec.QWORD,
    "FLOAT": SizeSpec.FLOAT, "DOUBLE": SizeSpec.DOUBLE, "REAL": SizeSpec.REAL,
}

def ptr_prefix(spec: SizeSpec) -> str:
    return PTR_PREFIX[spec.size]

def align_up(n: int, a: int) -> int:
    return (n + a - 1) // a * a

class Architecture:
    def __init__(self, name: str, bits: int, scratch: str, float_scratch: str = "xmm5"):
        self.name = name
        self.bits = bits
        self.word = bits // 8
        self.scratch = scratch
        self.float_scratch = float_scratch
        regs = _make_registers(bits)
        self._by_name = MappingProxyType({r.name: r for r in regs})
        self._by_family = MappingProxyType({(r.family, r.bits): r for r in regs if not r.high})

    @property
    def word_spec(self) -> SizeSpec:
        return SizeSpec.DWORD if self.bits == 32 else SizeSpec.QWORD

    @property
    def sp(self) -> str:
        return "esp" if self.bits == 32 else "rsp"

    @property
    def bp(self) -> str:
        return "ebp" if self.bits == 32 else "rbp"

    def register(self, name: str) -> Optional[Register]:
        return self._by_name.get(name.lower())

    def sized(self, family: str, bits: Optional[int] = None) -> Register:
        if family.startswith("xmm"):
            return self._by_family[(family, 128)]
        return self._by_family[(family, bits or self.bits)]

    def family_name(self, family: str) -> str:
        return self.sized(family).name

    def __repr__(self) -> str:
        return f"Architecture({self.name})"

X86 = Architecture("x86", 32, scratch="a")
X64 = Architecture("x64", 64, scratch="r11")

ARCHITECTURES = MappingProxyType({"x86": X86, "x64": X64})

ARCH_ALIASES = {
    "x86": "x86", "i386": "x86", "i486": "x86", "i586": "x86", "i686": "x86", "win32": "x86",
    "x64": "x64", "x86_64": "x64", "amd64": "x64", "win64": "x64",
}

def architecture(name: str) -> Architecture:
    key = ARCH_ALIASES.get(name.lower())
    if key is None:
        raise GenerationError(f"unknown architecture '{name}'", hint="use x86 or x64")
    return ARCHITECTURES[key]

def _arch_from_triple(triple: str) -> str:
    if not triple:
        return platform.machine() or ""
    return triple.split("-")[0]

def host_architecture() -> str:
    # hosts that are not x86 at all still get the 64-bit backend
    arch = _arch_from_triple(binding.get_default_triple())
    return ARCH_ALIASES.get(arch.lower(), "x64")

# ============================================================
# Calling Convention Registry
# ============================================================

@dataclass(frozen=True)
class CallingConvention:
    id: str
    integer_arg_registers: Tuple[str, ...] = ()
    float_arg_registers: Tuple[str, ...] = ()
    callee_cleans_stack: bool = False
    shadow_space: int = 0
    alias_target_per_architecture: Tuple[Tuple[str, str], ...] = ()
    architectures: FrozenSet[str] = frozenset({"x86"})
    argument_order_reversed: bool = True

    def alias_for(self, arch_name: str) -> Optional[str]:
        return dict(self.alias_target_per_architecture).get(arch_name)

    @property
    def register_passed(self) -> bool:
        return bool(self.integer_arg_registers)

BUILTIN_CONVENTIONS = (
    CallingConvention("cdecl", alias_target_per_architecture=(("x64", "fastcall"),)),
    CallingConvention("c", alias_target_per_architecture=(("x64", "fastcall"),)),
    CallingConvention("stdcall", callee_cleans_stack=True,
                      alias_target_per_architecture=(("x64", "fastcall"),)),
    CallingConvention("fastcall",
                      integer_arg_registers=("rcx", "rdx", "r8", "r9"),
                      float_arg_registers=("xmm0", "xmm1", "xmm2", "xmm3"),
                      shadow_space=32,
                      architectures=frozenset({"x64"})),
)

DEFAULT_CONVENTION = "stdcall"

class ConventionRegistry:
    def __init__(self, conventions):
        self._by_id = MappingProxyType({c.id: c for c in conventions})

    def names(self) -> List[str]:
        return sorted(self._by_id)

    def resolve(self, name: str, arch: Architecture) -> CallingConvention:
        conv = self._by_id.get(name)
        if conv is None:
            raise UnknownConventionError(f"unknown calling convention '{name}'",
                                         hint="known conventions: " + ", ".join(self.names()))
        target = conv.alias_for(arch.name)
        if target is not None:
            conv = self._by_id[target]
        if arch.name not in conv.architectures:
            raise UnknownConventionError(f"calling convention '{name}' is not available on {arch.name}",
                                         hint="use cdecl, c or stdcall on x86")
        return conv

REGISTRY = ConventionRegistry(BUILTIN_CONVENTIONS)

# invocation keyword -> convention name (None: the configured default)
INVOCATION_KEYWORDS = {
    "ccall": "cdecl", "cdecl": "cdecl", "c": "c",
    "stdcall": "stdcall", "fastcall": "fastcall", "invoke": None,
}

# ============================================================
# Frame modes and frame variables
# ============================================================

class FrameMode(Enum):
    STANDARD = "standard"
    STATIC = "static"

class FrameModeState:
    """Frame mode for procedures defined from now on, with a one-slot undo."""

    def __init__(self):
        self.current: Optional[FrameMode] = None
        self._undo: Optional[FrameMode] = None
        self._armed = False

    def set_mode(self, mode: FrameMode) -> FrameMode:
        self._undo = self.current
        self._armed = True
        self.current = mode
        return mode

    def restore_previous(self) -> FrameMode:
        if self._armed:
            self.current = self._undo
            self._armed = False
        return self.effective()

    def effective(self) -> FrameMode:
        return self.current or FrameMode.STANDARD

@dataclass
class FrameVariable:
    name: str
    type_tag: Optional[str]
    size: int
    count: int = 1
    frame_offset: Optional[int] = None
    base_register: Optional[str] = None
    captured_from_outer: bool = False

    def assign(self, base: str, offset: int):
        if self.frame_offset is not None:
            raise RuntimeError(f"offset of '.{self.name}' already assigned")
        self.base_register = base
        self.frame_offset = offset

    @property
    def footprint(self) -> int:
        return self.size * self.count

    @property
    def declared_size(self) -> Optional[SizeSpec]:
        if self.captured_from_outer or self.type_tag is None:
            return None
        spec = TYPE_SPECS.get(self.type_tag)
        # a slot narrower than its type holds a pointer (x64 real)
        if spec is not None and spec.size > self.size:
            return None
        return spec

    def label(self) -> str:
        if self.captured_from_outer:
            return str(self.frame_offset)
        off = self.frame_offset
        if off == 0:
            return self.base_register
        return f"{self.base_register}+{off}" if off > 0 else f"{self.base_register}-{-off}"

    def captured(self) -> "FrameVariable":
        return replace(self, type_tag=None, captured_from_outer=True)

@dataclass
class Parameter(FrameVariable):
    pass

@dataclass
class LocalVariable(FrameVariable):
    pass

# ============================================================
# Constant pools
# ============================================================

def _float_text(v) -> str:
    r = repr(float(v))
    if r in ("inf", "-inf", "nan"):
        raise GenerationError(f"cannot emit floating constant {r}")
    if "e" in r and "." not in r:
        mant, exp = r.split("e")
        r = f"{mant}.0e{exp}"
    return r

def _string_parts(text: str) -> List[str]:
    parts: List[str] = []
    run = ""
    for ch in text:
        if " " <= ch <= "~":
            run += "''" if ch == "'" else ch
            continue
        if run:
            parts.append(f"'{run}'")
            run = ""
        parts.append(str(ord(ch)))
    if run:
        parts.append(f"'{run}'")
    return parts

def _string_data(text: str) -> str:
    return ", ".join(_string_parts(text) + ["0"])

@dataclass(frozen=True)
class ConstantPoolEntry:
    label: str
    type_tag: str  # size spec value, aggregate name, "string" or "wstring"
    values: tuple
    owning_procedure: str = field(compare=False, default="")

    def render(self) -> str:
        if self.type_tag in ("string", "wstring"):
            directive = "db" if self.type_tag == "string" else "du"
            return f"{self.label} {directive} {_string_data(self.values[0])}"
        try:
            spec = SizeSpec(self.type_tag)
        except ValueError:
            # aggregate instance; no values means default initialisation
            body = ", ".join(str(v) for v in self.values)
            return f"{self.label} {self.type_tag} {body}".rstrip()
        items = []
        for v in self.values:
            if isinstance(v, str) and v.startswith(("'", '"')):
                items.append(v)
            elif spec.is_float and isinstance(v, (int, float)):
                items.append(_float_text(v))
            else:
                items.append(str(v))
        return f"{self.label} {DATA_DIRECTIVE[spec]} {', '.join(items)}"

class ConstantPool:
    def __init__(self, owner: str):
        self.owner = owner
        self.entries: Dict[Tuple[str, tuple], ConstantPoolEntry] = {}

    def intern(self, type_tag: str, values: tuple) -> ConstantPoolEntry:
        key = (type_tag, tuple((type(v).__name__, v) for v in values))
        entry = self.entries.get(key)
        if entry is None:
            label = f"__c_{self.owner}_{len(self.entries)}"
            entry = ConstantPoolEntry(label, type_tag, tuple(values), self.owner)
            self.entries[key] = entry
            LOGGER.debug("pool %s: %s", self.owner or "<unit>", label)
        return entry

    def render(self) -> List[str]:
        return [e.render() for e in self.entries.values()]

    def __len__(self) -> int:
        return len(self.entries)

# ============================================================
# Procedure symbols and frame layout
# ============================================================

@dataclass
class FrameLayout:
    base_register: str
    local_size: int
    param_bytes: int
    prologue: List[str]
    epilogue: List[str]

@dataclass(eq=False)
class ProcedureSymbol:
    name: str
    mangled_name: str
    calling_convention: CallingConvention
    frame_mode: FrameMode
    parameters: List[Parameter] = field(default_factory=list)
    locals: List[LocalVariable] = field(default_factory=list)
    preserved_registers: List[Register] = field(default_factory=list)
    children: List["ProcedureSymbol"] = field(default_factory=list)
    referenced: bool = False
    pos: int = 0
    layout: Optional[FrameLayout] = None
    code: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    pending_children: List[Tuple[str, int]] = field(default_factory=list)
    pool: Optional[ConstantPool] = None
    ended_with_epilogue: bool = False
    _parent: Optional[weakref.ref] = field(default=None, repr=False)

    def __post_init__(self):
        if self.pool is None:
            self.pool = ConstantPool(self.mangled_name)

    @property
    def parent_scope(self) -> Optional["ProcedureSymbol"]:
        return self._parent() if self._parent is not None else None

    @property
    def frozen(self) -> bool:
        return self.layout is not None

    def variable(self, name: str) -> Optional[FrameVariable]:
        for v in self.parameters:
            if v.name == name:
                return v
        for v in self.locals:
            if v.name == name:
                return v
        return None

    def child(self, name: str) -> Optional["ProcedureSymbol"]:
        return next((c for c in self.children if c.name == name), None)

    def ancestors(self):
        sym = self
        while sym is not None:
            yield sym
            sym = sym.parent_scope

class FrameLayoutEngine:
    """Assigns frame offsets and builds prologue/epilogue text.

    Standard frames address everything through ebp/rbp. Static frames
    address through esp/rsp as it stands right after the prologue; code
    that moves the stack pointer afterwards must compensate by itself.
    """

    def __init__(self, arch: Architecture):
        self.arch = arch

    def assign(self, sym: ProcedureSymbol) -> FrameLayout:
        layout = self._layout32(sym) if self.arch.bits == 32 else self._layout64(sym)
        sym.layout = layout
        LOGGER.debug("layout %s: %s base=%s locals=%d params=%d", sym.mangled_name,
                     sym.frame_mode.value, layout.base_register, layout.local_size, layout.param_bytes)
        return layout

    def _layout32(self, sym: ProcedureSymbol) -> FrameLayout:
        W = 4
        uses = [r.name for r in sym.preserved_registers]
        L = sum(align_up(lv.footprint, W) for lv in sym.locals)
        param_bytes = sum(align_up(p.size, W) for p in sym.parameters)

        if sym.frame_mode is FrameMode.STANDARD:
            base = "ebp"
            off = 8
            for p in sym.parameters:
                p.assign(base, off)
                off += align_up(p.size, W)
            cursor = 0
            for lv in sym.locals:
                cursor += align_up(lv.footprint, W)
                lv.assign(base, -cursor)
            prologue = ["push ebp", "mov ebp, esp"]
            if L:
                prologue.append(f"sub esp, {L}")
            prologue += [f"push {u}" for u in uses]
            epilogue = [f"pop {u}" for u in reversed(uses)] + ["leave"]
        else:
            base = "esp"
            cursor = 0
            for lv in sym.locals:
                lv.assign(base, cursor)
                cursor += align_up(lv.footprint, W)
            off = L + W * len(uses) + W
            for p in sym.parameters:
                p.assign(base, off)
                off += align_up(p.size, W)
            prologue = [f"push {u}" for u in uses]
            if L:
                prologue.append(f"sub esp, {L}")
            epilogue = [f"add esp, {L}"] if L else []
            epilogue += [f"pop {u}" for u in reversed(uses)]

        if sym.calling_convention.callee_cleans_stack and param_bytes:
            epilogue.append(f"ret {param_bytes}")
        else:
            epilogue.append("ret")
        return FrameLayout(base, L, param_bytes, prologue, epilogue)

    def _homes(self, sym: ProcedureSymbol) -> List[str]:
        conv = sym.calling_convention
        lines = []
        for i, p in enumerate(sym.parameters[:len(conv.integer_arg_registers)]):
            slot = f"[{p.label()}]"
            if p.type_tag == "DOUBLE":
                lines.append(f"movsd qword {slot}, {conv.float_arg_registers[i]}")
            elif p.type_tag == "FLOAT":
                lines.append(f"movss dword {slot}, {conv.float_arg_registers[i]}")
            else:
                lines.append(f"mov {slot}, {conv.integer_arg_registers[i]}")
        return lines

    def _layout64(self, sym: ProcedureSymbol) -> FrameLayout:
        W = 8
        uses = [r.name for r in sym.preserved_registers]
        k = len(uses)
        raw = sum(align_up(lv.footprint, W) for lv in sym.locals)
        param_bytes = W * len(sym.parameters)

        if sym.frame_mode is FrameMode.STANDARD:
            base = "rbp"
            L = align_up(raw + W * k, 16) - W * k
            for i, p in enumerate(sym.parameters):
                p.assign(base, 16 + W * i)
            cursor = 0
            for lv in sym.locals:
                cursor += align_up(lv.footprint, W)
                lv.assign(base, -cursor)
            prologue = ["push rbp", "mov rbp, rsp"] + self._homes(sym)
            if L:
                prologue.append(f"sub rsp, {L}")
            prologue += [f"push {u}" for u in uses]
            epilogue = [f"pop {u}" for u in reversed(uses)] + ["leave", "ret"]
        else:
            base = "rsp"
            L = align_up(raw + W * k + W, 16) - W * k - W
            cursor = 0
            for lv in sym.locals:
                lv.assign(base, cursor)
                cursor += align_up(lv.footprint, W)
            for i, p in enumerate(sym.parameters):
                p.assign(base, L + W * k + W + W * i)
            prologue = [f"push {u}" for u in uses]
            if L:
                prologue.append(f"sub rsp, {L}")
            prologue += self._homes(sym)
            epilogue = [f"add rsp, {L}"] if L else []
            epilogue += [f"pop {u}" for u in reversed(uses)] + ["ret"]
        return FrameLayout(base, L, param_bytes, prologue, epilogue)

# ============================================================
# Nested Procedure Resolver
# ============================================================

@dataclass
class Scope:
    symbol: Optional[ProcedureSymbol]
    names: Dict[str, ProcedureSymbol] = field(default_factory=dict)

class ScopeResolver:
    """Lexical scope chain of open procedures.

    A procedure's short name is visible inside its own body and inside
    every procedure nested in it, never to its siblings.
    """

    def __init__(self):
        self.stack: List[Scope] = [Scope(None)]

    @property
    def current(self) -> Optional[ProcedureSymbol]:
        return self.stack[-1].symbol

    def mangle(self, name: str) -> str:
        outer = self.current
        return f"{outer.mangled_name}.{name}" if outer is not None else name

    def enter(self, name: str, symbol: ProcedureSymbol) -> str:
        mangled = self.mangle(name)
        parent = self.current
        symbol.mangled_name = mangled
        symbol.pool.owner = mangled
        if parent is not None:
            symbol._parent = weakref.ref(parent)
            parent.children.append(symbol)
        scope = Scope(symbol)
        scope.names[name] = symbol
        self.stack.append(scope)
        return mangled

    def leave(self) -> ProcedureSymbol:
        if len(self.stack) == 1:
            raise GenerationError("'endp' without an open procedure")
        return self.stack.pop().symbol

    def resolve_reference(self, short: str) -> ProcedureSymbol:
        for scope in reversed(self.stack):
            sym = scope.names.get(short)
            if sym is not None:
                return sym
        raise UnresolvedNestedNameError(f"'{short}' does not name a procedure visible here")

    def resolve_child(self, dotted: str) -> ProcedureSymbol:
        parent = self.current
        child = parent.child(dotted.lstrip(".")) if parent is not None else None
        if child is not None:
            return child
        raise UnresolvedNestedNameError(f"no nested procedure '{dotted}' in the current procedure")

    def lookup_variable(self, name: str) -> Optional[FrameVariable]:
        for depth, scope in enumerate(reversed(self.stack)):
            if scope.symbol is None:
                continue
            var = scope.symbol.variable(name)
            if var is not None and var.frame_offset is not None:
                return var if depth == 0 else var.captured()
        return None

# ============================================================
# Directive lexer
# ============================================================

reserved = {
    "proc": "PROC",
    "local": "LOCAL",
    "invoke": "INVOKE",
    "uses": "USES",
    "addr": "ADDR",
    "va_list": "VA_LIST",
    "const": "CONST",
    "public": "PUBLIC",
    ".struct": "STRUCT",
    ".frame": "FRAME",
    ".arch": "ARCH",
    "endp": "ENDP",
    ".endp": "ENDP",
}

tokens = [
    "NAME", "NUMBER", "STRING", "SPEC",
    "LPAREN", "RPAREN", "LBRACKET", "RBRACKET", "LBRACE", "RBRACE",
    "COMMA", "COLON", "PLUS", "MINUS", "TIMES", "AMP", "LT", "GT",
] + sorted(set(reserved.values()))

t_ignore = " \t\r"

t_LPAREN   = r"\("
t_RPAREN   = r"\)"
t_LBRACKET = r"\["
t_RBRACKET = r"\]"
t_LBRACE   = r"\{"
t_RBRACE   = r"\}"
t_COMMA    = r","
t_COLON    = r":"
t_PLUS     = r"\+"
t_MINUS    = r"-"
t_TIMES    = r"\*"
t_AMP      = r"&"
t_LT       = r"<"
t_GT       = r">"

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"', "'": "'"}

_string_pattern = r"""L?(?:"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')"""

def t_comment(t):
    r';[^\n]*'
    pass

@TOKEN(_string_pattern)
def t_STRING(t):
    wide = t.value.startswith("L")
    body = t.value[2:-1] if wide else t.value[1:-1]
    body = re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)
    t.value = (body, wide)
    return t

def t_NUMBER(t):
    r'(?:\d[0-9A-Fa-f]*[hH](?![A-Za-z0-9_.$?@])|0[xX][0-9A-Fa-f]+|\d+\.\d*(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+|\d+)'
    text = t.value
    if text[:2] in ("0x", "0X"):
        t.value = int(text, 16)
    elif text[-1] in "hH":
        t.value = int(text[:-1], 16)
    elif any(c in text for c in ".eE"):
        t.value = float(text)
    else:
        t.value = int(text)
    return t

def t_NAME(t):
    r'[A-Za-z_.$?@][A-Za-z0-9_.$?@]*'
    if t.value in reserved:
        t.type = reserved[t.value]
    elif t.value in SizeSpec._value2member_map_:
        t.type = "SPEC"
        t.value = SizeSpec(t.value)
    return t

def t_error(t):
    raise DirectiveSyntaxError(f"unexpected character {t.value[0]!r}", pos=t.lexpos)

# ============================================================
# Parse tree
# ============================================================

@dataclass
class Node:
    kind: str
    pos: int
    data: tuple

def N(kind, p, idx=1, *data):
    return Node(kind=kind, pos=p.lexpos(idx), data=data)

# ============================================================
# Directive grammar (PLY)
# ============================================================

_LEXER = None
_PARSER = None

def directive_parser():
    global _LEXER, _PARSER
    if _PARSER is None:
        _LEXER = lex()
        _PARSER = yacc(start="line", debug=False, write_tables=False)
    return _LEXER, _PARSER

def parse_directive(text: str) -> Node:
    lexer, parser = directive_parser()
    try:
        return parser.parse(text, lexer=lexer.clone())
    except DirectiveSyntaxError as e:
        if e.pos is None:
            e.pos = len(text.rstrip())
        raise

def p_line_proc(p):
    """line : PROC signature"""
    p[0] = p[2]

def p_line_local(p):
    """line : LOCAL local_list"""
    p[0] = N("local", p, 1, p[2])

def p_line_invoke(p):
    """line : INVOKE invocation"""
    p[0] = p[2]

def p_line_public(p):
    """line : PUBLIC name_list"""
    p[0] = N("public", p, 1, p[2])

def p_line_struct(p):
    """line : STRUCT NAME COMMA NUMBER"""
    p[0] = N("struct", p, 2, p[2], p[4])

def p_line_setting(p):
    """line : FRAME NAME
            | ARCH NAME"""
    p[0] = N(p.slice[1].type.lower(), p, 2, p[2])

def p_line_endp(p):
    """line : ENDP"""
    p[0] = N("endp", p, 1)

def p_name_list(p):
    """name_list : NAME
                 | name_list COMMA NAME"""
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_empty(p):
    """empty :"""
    p[0] = None

# --- procedure headers

def p_signature(p):
    """signature : proc_head proc_params proc_uses"""
    conv, name, pos = p[1]
    p[0] = Node("proc", pos, (conv, name, p[2], p[3]))

def p_proc_head(p):
    """proc_head : NAME
                 | NAME NAME"""
    if len(p) == 2:
        p[0] = (None, p[1], p.lexpos(1))
    else:
        p[0] = (p[1], p[2], p.lexpos(2))

def p_proc_params(p):
    """proc_params : empty
                   | LPAREN RPAREN
                   | LPAREN param_list RPAREN"""
    p[0] = p[2] if len(p) == 4 else []

def p_param_list(p):
    """param_list : param
                  | param_list COMMA param"""
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_param(p):
    """param : NAME
             | NAME COLON type_name"""
    p[0] = N("param", p, 1, p[1], p[3] if len(p) == 4 else None)

def p_type_name(p):
    """type_name : NAME
                 | SPEC"""
    p[0] = p[1].value.upper() if isinstance(p[1], SizeSpec) else p[1]

def p_proc_uses(p):
    """proc_uses : empty
                 | USES reg_list"""
    p[0] = p[2] if len(p) == 3 else []

def p_reg_list(p):
    """reg_list : NAME
                | reg_list NAME
                | reg_list COMMA NAME"""
    if len(p) == 2:
        p[0] = [N("reg", p, 1, p[1])]
    else:
        p[0] = p[1] + [N("reg", p, len(p) - 1, p[len(p) - 1])]

def p_local_list(p):
    """local_list : local_item
                  | local_list COMMA local_item"""
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_local_item(p):
    """local_item : NAME
                  | NAME COLON type_name
                  | NAME COLON type_name LBRACKET NUMBER RBRACKET"""
    tag = p[3] if len(p) >= 4 else None
    count = p[5] if len(p) == 7 else 1
    p[0] = N("localvar", p, 1, p[1], tag, count)

# --- invocations

def p_invocation(p):
    """invocation : target
                  | target COMMA arg_list"""
    p[0] = Node("invoke", p[1].pos, (p[1], p[3] if len(p) == 4 else []))

def p_target(p):
    """target : NAME
              | LBRACKET expr RBRACKET"""
    if len(p) == 2:
        p[0] = N("name", p, 1, p[1])
    else:
        p[0] = N("mem", p, 1, p[2])

def p_arg_list(p):
    """arg_list : arg
                | arg_list COMMA arg"""
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_arg(p):
    """arg : operand
           | SPEC operand"""
    if len(p) == 2:
        p[0] = Node("arg", p[1].pos, (None, p[1]))
    else:
        p[0] = N("arg", p, 1, p[1], p[2])

def p_operand_name(p):
    """operand : NAME"""
    p[0] = N("name", p, 1, p[1])

def p_operand_number(p):
    """operand : number"""
    p[0] = p[1]

def p_number(p):
    """number : NUMBER
              | MINUS NUMBER"""
    if len(p) == 2:
        p[0] = N("num", p, 1, p[1])
    else:
        p[0] = N("num", p, 1, -p[2])

def p_operand_memory(p):
    """operand : LBRACKET expr RBRACKET"""
    p[0] = N("mem", p, 1, p[2])

def p_operand_address(p):
    """operand : ADDR expr
               | AMP expr"""
    p[0] = N("addr", p, 1, p[2])

def p_operand_pair(p):
    """operand : NAME COLON NAME"""
    p[0] = N("pair", p, 1, p[1], p[3])

def p_operand_string(p):
    """operand : STRING"""
    p[0] = N("str", p, 1, *p[1])

def p_operand_const(p):
    """operand : LT const_body GT"""
    p[0] = p[2]
    p[0].pos = p.lexpos(1)

def p_operand_va_list(p):
    """operand : VA_LIST LBRACE arg_list RBRACE
               | VA_LIST arg"""
    values = p[3] if len(p) == 5 else [p[2]]
    p[0] = N("va_list", p, 1, values)

def p_const_body_default(p):
    """const_body : CONST NAME"""
    p[0] = N("const", p, 1, p[2], [], True)

def p_const_body_va_list(p):
    """const_body : VA_LIST arg_list"""
    p[0] = N("va_list", p, 1, p[2])

def p_const_body_tagged(p):
    """const_body : SPEC value_list
                  | NAME value_list
                  | CONST SPEC value_list
                  | CONST NAME value_list"""
    tag = p[len(p) - 2]
    tag = tag.value if isinstance(tag, SizeSpec) else tag
    p[0] = N("const", p, 1, tag, p[len(p) - 1], False)

def p_const_body_plain(p):
    """const_body : value_list"""
    p[0] = Node("const", p[1][0].pos, (None, p[1], False))

def p_value_list(p):
    """value_list : value
                  | value_list COMMA value"""
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_value(p):
    """value : number"""
    p[0] = p[1]

def p_value_string(p):
    """value : STRING"""
    p[0] = N("str", p, 1, *p[1])

def p_value_name(p):
    """value : NAME"""
    p[0] = N("name", p, 1, p[1])

# --- address expressions: list of (sign, term) pairs

def p_expr_first(p):
    """expr : term
            | MINUS term"""
    if len(p) == 2:
        p[0] = [(1, p[1])]
    else:
        p[0] = [(-1, p[2])]

def p_expr_more(p):
    """expr : expr PLUS term
            | expr MINUS term"""
    p[0] = p[1] + [(1 if p[2] == "+" else -1, p[3])]

def p_term(p):
    """term : NAME
            | NUMBER
            | NAME TIMES NUMBER
            | NUMBER TIMES NAME"""
    if len(p) == 2:
        kind = "num" if isinstance(p[1], (int, float)) else "name"
        p[0] = N("term", p, 1, kind, p[1], 1)
    elif isinstance(p[1], str):
        p[0] = N("term", p, 1, "name", p[1], p[3])
    else:
        p[0] = N("term", p, 1, "name", p[3], p[1])

def p_error(t):
    if t is None:
        raise DirectiveSyntaxError("unexpected end of line")
    shown = t.value.value if isinstance(t.value, SizeSpec) else t.value
    raise DirectiveSyntaxError(f"unexpected {t.type.lower()} {shown!r}", pos=t.lexpos)

# ============================================================
# Arguments
# ============================================================

def renamed(arch: Architecture, reg: Register, renames: Optional[Dict[str, str]]) -> str:
    if renames and reg.family in renames:
        return arch.sized(renames[reg.family], None if reg.sse else reg.bits).name
    return reg.name

@dataclass(frozen=True)
class AddressExpr:
    registers: Tuple[Tuple[Register, int], ...] = ()         # (register, scale)
    displacement: Tuple[Tuple[int, Union[int, str]], ...] = ()  # (sign, number or symbol)

    @property
    def families(self) -> List[str]:
        return [r.family for r, _ in self.registers]

    @property
    def has_symbols(self) -> bool:
        return any(isinstance(v, str) for _, v in self.displacement)

    def disp_text(self, extra: int = 0) -> str:
        total = extra
        text = ""
        for sign, v in self.displacement:
            if isinstance(v, int):
                total += sign * v
            else:
                text += ("-" if sign < 0 else "+") + v
        if total:
            text += f"{total:+d}"
        return text[1:] if text.startswith("+") else text

    def render(self, arch: Architecture, renames: Optional[Dict[str, str]] = None, extra: int = 0) -> str:
        out = ""
        for reg, scale in self.registers:
            name = renamed(arch, reg, renames)
            term = name if scale == 1 else f"{name}*{scale}"
            out = f"{out}+{term}" if out else term
        disp = self.disp_text(extra)
        if disp:
            if not out:
                out = disp
            elif disp.startswith("-"):
                out += disp
            else:
                out += "+" + disp
        return out or "0"

class Argument:
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class RegisterArg(Argument):
    register: Register
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class MemoryArg(Argument):
    address: AddressExpr
    declared: Optional[SizeSpec] = None
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class ImmediateArg(Argument):
    value: Union[int, float, str]
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class AddressArg(Argument):
    address: AddressExpr
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class SeparatedQwordArg(Argument):
    high: Register
    low: Register
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class ConstantArg(Argument):
    type_tag: str
    values: tuple = ()
    default_init: bool = False
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class StringArg(Argument):
    text: str
    wide: bool = False
    spec: Optional[SizeSpec] = None
    pos: int = 0

@dataclass
class VaListArg(Argument):
    values: List[Argument] = field(default_factory=list)
    spec: Optional[SizeSpec] = None
    pos: int = 0

_ALLOWED_SPECS = {
    "register": {SizeSpec.QWORD, SizeSpec.DWORD, SizeSpec.WORD, SizeSpec.BYTE, SizeSpec.FLOAT},
    "sse register": {SizeSpec.QWORD, SizeSpec.DWORD, SizeSpec.DOUBLE, SizeSpec.FLOAT},
    "address": {SizeSpec.QWORD, SizeSpec.DWORD},
}

_WIDE_ONLY = {("register", SizeSpec.QWORD), ("register", SizeSpec.FLOAT), ("address", SizeSpec.QWORD)}

_GPR_SPECS = {64: SizeSpec.QWORD, 32: SizeSpec.DWORD, 16: SizeSpec.WORD, 8: SizeSpec.BYTE}

def argument_kind(arg: Argument) -> str:
    if isinstance(arg, RegisterArg):
        return "sse register" if arg.register.sse else "register"
    if isinstance(arg, MemoryArg):
        return "memory"
    if isinstance(arg, ImmediateArg):
        return "literal"
    if isinstance(arg, AddressArg):
        return "address"
    if isinstance(arg, SeparatedQwordArg):
        return "separated qword"
    if isinstance(arg, ConstantArg):
        return "constant"
    if isinstance(arg, StringArg):
        return "string"
    return "va_list"

def effective_spec(arg: Argument, arch: Architecture) -> SizeSpec:
    """Explicit specifier after validation, else the inferred one."""
    kind = argument_kind(arg)
    spec = arg.spec
    if spec is not None:
        if kind in ("separated qword", "constant", "string", "va_list"):
            raise InvalidArgumentSpecifierError(f"a {kind} argument takes no size specifier", pos=arg.pos,
                                                hint=f"drop '{spec.value}'")
        allowed = _ALLOWED_SPECS.get(kind)
        if (allowed is not None and spec not in allowed) or ((kind, spec) in _WIDE_ONLY and arch.bits == 32):
            raise InvalidArgumentSpecifierError(f"'{spec.value}' cannot qualify a {kind} argument on {arch.name}",
                                                pos=arg.pos)
        return spec
    if kind == "register":
        return _GPR_SPECS[arg.register.bits]
    if kind == "sse register":
        return SizeSpec.DOUBLE
    if kind == "memory":
        return arg.declared or arch.word_spec
    if kind == "literal":
        return SizeSpec.DOUBLE if isinstance(arg.value, float) else arch.word_spec
    if kind == "separated qword":
        return SizeSpec.QWORD
    return arch.word_spec

def real80_bits(v: float) -> int:
    """x87 extended precision encoding, explicit integer bit included."""
    if math.isinf(v) or math.isnan(v):
        raise GenerationError(f"cannot encode {v} as real")
    sign = 1 if math.copysign(1.0, v) < 0 else 0
    if v == 0:
        return sign << 79
    m, e = math.frexp(abs(v))
    return (sign << 79) | ((e - 1 + 16383) << 64) | int(m * (1 << 64))

def literal_bits(value: Union[int, float], spec: SizeSpec, pos: int = 0) -> int:
    if isinstance(value, float) or spec.is_float:
        v = float(value)
        try:
            if spec in (SizeSpec.FLOAT, SizeSpec.DWORD):
                return struct.unpack("<I", struct.pack("<f", v))[0]
            if spec in (SizeSpec.DOUBLE, SizeSpec.QWORD):
                return struct.unpack("<Q", struct.pack("<d", v))[0]
        except OverflowError:
            raise InvalidArgumentSpecifierError(f"{value} is out of range for {spec.value}", pos=pos)
        if spec is SizeSpec.REAL:
            return real80_bits(v)
        raise InvalidArgumentSpecifierError(f"floating literal {value} does not fit in a {spec.value}", pos=pos)
    bits = spec.size * 8
    if not -(1 << (bits - 1)) <= value < (1 << bits):
        raise InvalidArgumentSpecifierError(f"{value} does not fit in a {spec.value}", pos=pos)
    return value & ((1 << bits) - 1)

def _dwords(bits: int, count: int) -> List[int]:
    return [(bits >> (32 * i)) & 0xFFFFFFFF for i in range(count)]

def _hex(v: int) -> str:
    return str(v) if v < 10 else f"0x{v:X}"

class ArgumentReader:
    """Turns parsed invocation operands into Argument values."""

    def __init__(self, ctx: "CompilationContext"):
        self.ctx = ctx

    @property
    def arch(self) -> Architecture:
        return self.ctx.arch

    def target(self, node: Node) -> Union[str, Register, AddressExpr]:
        if node.kind == "mem":
            return self.address(node.data[0])[0]
        name = node.data[0]
        reg = self.arch.register(name)
        if reg is not None:
            if reg.sse or reg.bits != self.arch.bits:
                raise GenerationError(f"cannot call through '{name}'", pos=node.pos)
            return reg
        return name

    def argument(self, node: Node, nested: bool = False) -> Argument:
        spec, op = node.data
        pos = node.pos
        kind = op.kind
        if kind == "name":
            name = op.data[0]
            reg = self.arch.register(name)
            if reg is not None:
                return RegisterArg(reg, spec, pos)
            if name.startswith("."):
                var = self.ctx.scopes.lookup_variable(name[1:])
                if var is not None:
                    # a bare frame label passes the variable's address
                    return AddressArg(self._var_address(var), spec, pos)
            return ImmediateArg(name, spec, pos)
        if kind == "num":
            return ImmediateArg(op.data[0], spec, pos)
        if kind == "mem":
            addr, var = self.address(op.data[0])
            return MemoryArg(addr, var.declared_size if var is not None else None, spec, pos)
        if kind == "addr":
            return AddressArg(self.address(op.data[0])[0], spec, pos)
        if kind == "pair":
            return SeparatedQwordArg(self._half(op.data[0], op.pos), self._half(op.data[1], op.pos), spec, pos)
        if kind == "str":
            return StringArg(op.data[0], op.data[1], spec, pos)
        if kind == "const":
            tag, values, default = op.data
            return ConstantArg(self._const_tag(tag, values), tuple(self._const_value(v) for v in values),
                               default, spec, pos)
        if kind == "va_list":
            if nested:
                raise GenerationError("va_list values cannot contain another va_list", pos=pos)
            return VaListArg([self.argument(v, nested=True) for v in op.data[0]], spec, pos)
        raise GenerationError(f"unsupported argument form '{kind}'", pos=pos)

    def address(self, terms) -> Tuple[AddressExpr, Optional[FrameVariable]]:
        regs: List[Tuple[Register, int]] = []
        disp: List[Tuple[int, Union[int, str]]] = []
        var = None
        for sign, term in terms:
            kind, value, scale = term.data
            if kind == "num":
                if isinstance(value, float):
                    raise GenerationError("floating value in an address expression", pos=term.pos)
                disp.append((sign, value))
                continue
            reg = self.arch.register(value)
            if reg is not None:
                if sign < 0 or reg.sse or reg.bits != self.arch.bits:
                    raise GenerationError(f"'{value}' cannot be used in an address here", pos=term.pos,
                                          hint=f"add {self.arch.bits}-bit general-purpose registers")
                if scale not in (1, 2, 4, 8):
                    raise GenerationError(f"invalid scale {scale}", pos=term.pos)
                regs.append((reg, scale))
                continue
            if scale != 1:
                raise GenerationError("only registers can be scaled", pos=term.pos)
            if value.startswith("."):
                found = self.ctx.scopes.lookup_variable(value[1:])
                if found is not None:
                    if sign < 0:
                        raise GenerationError(f"frame variable '{value}' cannot be subtracted", pos=term.pos)
                    var = var or found
                    if not found.captured_from_outer:
                        regs.append((self.arch.register(found.base_register), 1))
                    disp.append((1, found.frame_offset))
                    continue
            disp.append((sign, value))
        if len(regs) > 2 or (len(regs) == 2 and regs[0][1] > 1 and regs[1][1] > 1):
            raise GenerationError("too many registers in address expression", pos=terms[0][1].pos)
        return AddressExpr(tuple(regs), tuple(disp)), var

    def _var_address(self, var: FrameVariable) -> AddressExpr:
        regs = () if var.captured_from_outer else ((self.arch.register(var.base_register), 1),)
        return AddressExpr(regs, ((1, var.frame_offset),))

    def _half(self, name: str, pos: int) -> Register:
        reg = self.arch.register(name)
        if reg is None or reg.sse or reg.bits != 32:
            raise InvalidArgumentSpecifierError(f"'{name}' is not a 32-bit general-purpose register", pos=pos,
                                                hint="write a separated qword as high:low, e.g. edx:eax")
        return reg

    def _const_tag(self, tag: Optional[str], values) -> str:
        if tag is None:
            if any(v.kind == "str" for v in values):
                return SizeSpec.BYTE.value
            if any(v.kind == "num" and isinstance(v.data[0], float) for v in values):
                return SizeSpec.DOUBLE.value
            return self.arch.word_spec.value
        if tag in SizeSpec._value2member_map_:
            return tag
        if tag.upper() in TYPE_SPECS:
            return TYPE_SPECS[tag.upper()].value
        return tag

    def _const_value(self, node: Node):
        if node.kind == "num":
            return node.data[0]
        if node.kind == "str":
            return ", ".join(_string_parts(node.data[0])) or "''"
        return node.data[0]

# ============================================================
# Register Preservation Planner
# ============================================================

class ReadMode(Enum):
    VALUE = "value"
    ADDRESS = "address"

@dataclass(frozen=True)
class RegisterRead:
    family: str
    mode: ReadMode = ReadMode.VALUE
    single: bool = False  # the only register of an address expression

@dataclass
class RenderState:
    arch: Architecture
    depth: int       # bytes pushed since the reserved area was allocated
    area_base: int   # offset of the reserved area from the stack pointer at depth 0
    renames: Dict[str, str] = field(default_factory=dict)
    frame: int = 0   # bytes the call site itself reserved below the caller's stack pointer

    def reg(self, register: Register) -> str:
        return renamed(self.arch, register, self.renames)

    def bias(self, addr: AddressExpr) -> int:
        # operands written against the stack pointer see it as it was before the call site
        return self.depth + self.frame if "sp" in addr.families else 0

    def area(self, offset: int) -> str:
        total = self.depth + self.area_base + offset
        return f"{self.arch.sp}+{total}" if total else self.arch.sp

    def mem(self, addr: AddressExpr, extra: int = 0) -> str:
        return f"[{addr.render(self.arch, self.renames, extra + self.bias(addr))}]"

@dataclass
class MarshalStep:
    arg_index: int   # 1-based argument position, 0 for the call itself
    render: Callable[[RenderState], List[str]]
    reads: Tuple[RegisterRead, ...] = ()
    writes: FrozenSet[str] = frozenset()
    dest: Optional[str] = None    # register family that receives the argument
    spare: Optional[str] = None   # unused general register of the same slot
    in_place: Optional[Callable[[RenderState], List[str]]] = None
    pushes: int = 0

@dataclass
class PlanOp:
    kind: str        # "save" | "restore" | "clobber"
    family: str      # the value the op is about
    step: int
    slot: Optional[int] = None
    register: Optional[str] = None  # register saved from or restored into

@dataclass
class RegisterPreservation:
    must_save: bool = False
    save_slot: Optional[int] = None
    restore_before_arg_index: Optional[int] = None

@dataclass
class RegisterPreservationPlan:
    per_register: Dict[str, RegisterPreservation] = field(default_factory=dict)
    ops: List[PlanOp] = field(default_factory=list)
    slot_families: List[str] = field(default_factory=list)
    renames: List[Dict[str, str]] = field(default_factory=list)
    in_place: List[bool] = field(default_factory=list)

    def ops_before(self, step: int) -> List[PlanOp]:
        return [op for op in self.ops if op.step == step]

    def count(self, kind: str, family: Optional[str] = None) -> int:
        return sum(1 for op in self.ops if op.kind == kind and (family is None or op.family == family))

_GARBAGE = object()

class RegisterPreservationPlanner:
    """Schedules save/restore around argument evaluation.

    The planner simulates which value every register holds while the
    steps run. A value is saved right before the first step that
    destroys it, if a later step still reads it, and restored right
    before the step that needs it. Values are named by the register
    family that held them when the call site started.
    """

    def __init__(self, clobberable: Set[str], scratch: str, float_scratch: str):
        self.clobberable = set(clobberable)
        self.scratch = scratch
        self.float_scratch = float_scratch

    def plan(self, steps: List[MarshalStep]) -> RegisterPreservationPlan:
        self._steps = steps
        self._holder: Dict[str, object] = {}
        self._where: Dict[str, Optional[str]] = {}
        self._saved: Dict[str, int] = {}
        plan = RegisterPreservationPlan()
        self._plan = plan

        for k, step in enumerate(steps):
            renames: Dict[str, str] = {}
            in_place_reads = {r.family for r in step.reads if self._location(r.family) == r.family}
            taken: Set[str] = set()
            for read in step.reads:
                fam = read.family
                if fam in renames:
                    continue
                loc = self._location(fam)
                if loc is not None:
                    if loc != fam:
                        renames[fam] = loc
                    continue
                target = self._restore_target(fam, k, step, in_place_reads | taken)
                taken.add(target)
                plan.ops.append(PlanOp("restore", fam, k, self._saved[fam], target))
                info = plan.per_register.setdefault(fam, RegisterPreservation())
                if info.restore_before_arg_index is None:
                    info.restore_before_arg_index = step.arg_index
                self._put(target, fam)
                if target != fam:
                    renames[fam] = target

            writes = set(step.writes)
            use_in_place = False
            if step.in_place is not None:
                held = self._held(self.scratch)
                if isinstance(held, str) and self._needed(held, k) and self._only_single_address(held, k):
                    use_in_place = True
                    writes.discard(self.scratch)

            for reg in sorted(writes):
                if reg not in self.clobberable:
                    continue
                held = self._held(reg)
                if isinstance(held, str) and held not in self._saved and self._needed(held, k):
                    self._save(held, reg, k)
                plan.ops.append(PlanOp("clobber", reg, k, register=reg))
                self._put(reg, ("arg", k) if reg == step.dest else _GARBAGE)

            plan.renames.append(renames)
            plan.in_place.append(use_in_place)
            LOGGER.debug("plan step %d (arg %d): renames=%s in_place=%s", k, step.arg_index, renames, use_in_place)
        return plan

    def _held(self, reg: str):
        return self._holder.get(reg, reg)

    def _location(self, value: str) -> Optional[str]:
        return self._where.get(value, value)

    def _put(self, reg: str, value) -> None:
        old = self._held(reg)
        if isinstance(old, str) and self._location(old) == reg:
            self._where[old] = None
        self._holder[reg] = value
        if isinstance(value, str):
            self._where[value] = reg

    def _needed(self, value: str, k: int) -> bool:
        return any(r.family == value for s in self._steps[k + 1:] for r in s.reads)

    def _only_single_address(self, value: str, k: int) -> bool:
        reads = [r for s in self._steps[k + 1:] for r in s.reads if r.family == value]
        return all(r.mode is ReadMode.ADDRESS and r.single for r in reads)

    def _save(self, value: str, reg: str, k: int) -> None:
        slot = len(self._plan.slot_families)
        self._plan.slot_families.append(value)
        self._saved[value] = slot
        self._plan.ops.append(PlanOp("save", value, k, slot, reg))
        info = self._plan.per_register.setdefault(value, RegisterPreservation())
        info.must_save = True
        info.save_slot = slot

    def _restore_target(self, value: str, k: int, step: MarshalStep, busy: Set[str]) -> str:
        if not isinstance(self._held(value), tuple):
            return value
        # the home register carries an argument already placed for the call
        if value.startswith("xmm"):
            candidates = [step.dest if step.dest and step.dest.startswith("xmm") else None, self.float_scratch]
        else:
            candidates = [step.dest if step.dest and not step.dest.startswith("xmm") else None,
                          step.spare, self.scratch]
        for cand in candidates:
            if cand is None or cand in busy:
                continue
            held = self._held(cand)
            if isinstance(held, tuple):
                continue
            if isinstance(held, str) and held not in self._saved and self._needed(held, k):
                self._save(held, cand, k)
            return cand
        return value

# ============================================================
# Argument Marshaller / call-site generation
# ============================================================

@dataclass
class CallSite:
    target: Union[str, Register, AddressExpr]
    convention: CallingConvention
    arguments: List[Argument]
    owner: Optional[ProcedureSymbol] = None
    target_symbol: Optional[ProcedureSymbol] = None
    pos: int = 0

@dataclass
class VaListBlock:
    offsets: List[int]   # slot of each value, from the start of the reserved area
    size: int

@dataclass
class CallEmission:
    lines: List[str]
    plan: RegisterPreservationPlan
    frame_size: int
    arg_bytes: int
    va_block: Optional[VaListBlock] = None

_SELF_MOVE = re.compile(r"^(?:mov|movaps)\s+(\w+),\s*(\w+)$")

def _drop_self_moves(lines: List[str]) -> List[str]:
    out = []
    for line in lines:
        m = _SELF_MOVE.match(line)
        if m and m.group(1) == m.group(2):
            continue
        out.append(line)
    return out

def _address_reads(addr: AddressExpr) -> Tuple[RegisterRead, ...]:
    single = len(addr.registers) == 1
    return tuple(RegisterRead(f, ReadMode.ADDRESS, single) for f in addr.families)

def _can_accumulate(addr: AddressExpr, arch: Architecture) -> bool:
    scaled = [s for _, s in addr.registers if s > 1]
    return len(scaled) <= 1 and (arch.bits == 32 or not addr.has_symbols)

def _accumulate(st: RenderState, addr: AddressExpr, dest: str, push: bool = False) -> List[str]:
    """Builds an address in a stack operand without touching any register."""
    regs = sorted(addr.registers, key=lambda rs: (rs[1] == 1, rs[0].family != "sp"))
    first, scale = regs[0]
    lines = [f"push {st.reg(first)}"] if push else [f"mov {dest}, {st.reg(first)}"]
    if scale > 1:
        lines.append(f"shl {dest}, {scale.bit_length() - 1}")
    for reg, _ in regs[1:]:
        lines.append(f"add {dest}, {st.reg(reg)}")
    bias = st.bias(addr)
    if push and bias and first.family != "sp":
        # esp is added after our own push moved it
        bias += st.arch.word
    disp = addr.disp_text(bias)
    if disp:
        lines.append(f"add {dest}, {disp}")
    return lines

class CallSiteGenerator:
    """Lowers one invocation into marshalling steps, plans and renders them.

    Arguments are lowered last to first. On x86 every argument is pushed;
    on x64 the first four go to rcx/rdx/r8/r9 (xmm0-xmm3 for floating
    values) and the rest are stored above the 32-byte shadow space. A
    single reserved area per call holds the va_list block followed by
    the planner's save slots.
    """

    def __init__(self, ctx: "CompilationContext"):
        self.ctx = ctx

    @property
    def arch(self) -> Architecture:
        return self.ctx.arch

    def emit(self, site: CallSite) -> CallEmission:
        arch = self.arch
        conv = site.convention
        trace = self.ctx.config.trace
        pool = site.owner.pool if site.owner is not None else self.ctx.unit_pool

        va_args = [a for a in site.arguments if isinstance(a, VaListArg)]
        if len(va_args) > 1:
            if self.ctx.config.strict_va_list:
                raise VaListConflictError("a call site can carry only one va_list", pos=va_args[1].pos,
                                          hint="merge the values into one va_list")
            self.ctx.warn("later va_list overwrites the block of the first one", va_args[1].pos)
        blocks = [self._va_layout(a) for a in va_args]
        block = max((b.size for b in blocks), default=0)

        steps: List[MarshalStep] = []
        n = len(site.arguments)
        for idx in range(n, 0, -1):
            arg = site.arguments[idx - 1]
            if arch.bits == 32:
                steps += self._push_steps(arg, idx, pool)
            else:
                steps += self._move_steps(arg, idx, conv, pool)
        steps.append(self._call_step(site.target))

        planner = RegisterPreservationPlanner(self._clobberable(conv), arch.scratch, arch.float_scratch)
        plan = planner.plan(steps)

        slot_offsets = []
        area = block
        for fam in plan.slot_families:
            slot_offsets.append(area)
            area += 16 if fam.startswith("xmm") else arch.word
        area = align_up(area, arch.word)

        if arch.bits == 32:
            area_base = 0
            frame = area
        else:
            stacked = max(0, n - len(conv.integer_arg_registers))
            area_base = conv.shadow_space + arch.word * stacked
            frame = align_up(area_base + area, 16)

        lines: List[str] = []
        if frame:
            lines.append(f"sub {arch.sp}, {frame}")
        depth = 0
        last_arg = None
        for k, step in enumerate(steps):
            st = RenderState(arch, depth, area_base, plan.renames[k], frame)
            if trace and step.arg_index != last_arg and step.arg_index:
                lines.append(f"; arg {step.arg_index}")
            last_arg = step.arg_index
            for op in plan.ops_before(k):
                lines += self._render_op(op, st, slot_offsets)
            render = step.in_place if plan.in_place[k] else step.render
            lines += _drop_self_moves(render(st))
            depth += step.pushes

        if arch.bits == 32:
            cleanup = area if conv.callee_cleans_stack else depth + area
            if cleanup:
                lines.append(f"add esp, {cleanup}")
        else:
            lines.append(f"add rsp, {frame}")
        LOGGER.debug("call %s: %d steps, %d save slots, frame %d",
                     site.target, len(steps), len(plan.slot_families), frame)
        return CallEmission(lines, plan, frame, depth, max(blocks, key=lambda b: b.size) if blocks else None)

    def _clobberable(self, conv: CallingConvention) -> Set[str]:
        regs = {self.arch.scratch, self.arch.float_scratch}
        if self.arch.bits == 64:
            for name in conv.integer_arg_registers + conv.float_arg_registers:
                regs.add(self.arch.register(name).family)
        return regs

    def _render_op(self, op: PlanOp, st: RenderState, slot_offsets: List[int]) -> List[str]:
        trace = self.ctx.config.trace
        if op.kind == "clobber":
            return [f"; clobber {self.arch.family_name(op.register)}"] if trace else []
        where = f"[{st.area(slot_offsets[op.slot])}]"
        reg = self.arch.family_name(op.register)
        mov = "movdqu" if op.register.startswith("xmm") else "mov"
        line = f"{mov} {where}, {reg}" if op.kind == "save" else f"{mov} {reg}, {where}"
        if trace:
            line += f"  ; {op.kind} {self.arch.family_name(op.family)}"
        return [line]

    def _call_step(self, target) -> MarshalStep:
        arch = self.arch
        if isinstance(target, Register):
            return MarshalStep(0, lambda st: [f"call {st.reg(target)}"], (RegisterRead(target.family),))
        if isinstance(target, AddressExpr):
            size = arch.word_spec.value
            return MarshalStep(0, lambda st: [f"call {size} {st.mem(target)}"], _address_reads(target))
        return MarshalStep(0, lambda st: [f"call {target}"])

    def _intern(self, arg: Argument, pool: ConstantPool) -> ConstantPoolEntry:
        if isinstance(arg, StringArg):
            return pool.intern("wstring" if arg.wide else "string", (arg.text,))
        values = arg.values
        if arg.default_init and arg.type_tag in SizeSpec._value2member_map_:
            values = ("?",)
        return pool.intern(arg.type_tag, values)

    def _va_layout(self, arg: VaListArg) -> VaListBlock:
        offsets = []
        off = 0
        for value in arg.values:
            size = effective_spec(value, self.arch).size
            offsets.append(off)
            off += max(self.arch.word, align_up(size, self.arch.word))
        return VaListBlock(offsets, off)

    def _va_steps(self, arg: VaListArg, idx: int, pool: ConstantPool) -> List[MarshalStep]:
        steps: List[MarshalStep] = []
        for value, off in zip(arg.values, self._va_layout(arg).offsets):
            dest = lambda st, extra=0, off=off: f"[{st.area(off + extra)}]"
            steps += self._store_steps(value, idx, dest, pool, by_ref_real=False)
        return steps

    # --- x86: every argument is pushed

    def _push_steps(self, arg: Argument, idx: int, pool: ConstantPool) -> List[MarshalStep]:
        arch = self.arch
        spec = effective_spec(arg, arch)
        S = arch.sized(arch.scratch, 32).name
        X = arch.float_scratch
        scratch = frozenset({arch.scratch})

        if isinstance(arg, RegisterArg):
            r = arg.register
            reads = (RegisterRead(r.family),)
            if r.sse:
                if spec.size == 8:
                    return [MarshalStep(idx, lambda st: ["sub esp, 8", f"movsd qword [esp], {st.reg(r)}"], reads, pushes=8)]
                return [MarshalStep(idx, lambda st: ["sub esp, 4", f"movss dword [esp], {st.reg(r)}"], reads, pushes=4)]
            if r.high or r.size < spec.size:
                return [MarshalStep(idx, lambda st: [f"movzx {S}, {st.reg(r)}", f"push {S}"], reads, scratch, pushes=4)]
            full = arch.sized(r.family, 32)
            return [MarshalStep(idx, lambda st: [f"push {st.reg(full)}"], reads, pushes=4)]

        if isinstance(arg, ImmediateArg):
            v = arg.value
            if isinstance(v, str):
                if spec.is_float:
                    raise InvalidArgumentSpecifierError(f"symbol '{v}' cannot be passed as {spec.value}", pos=arg.pos)
                sym = ["push 0", f"push {v}"] if spec is SizeSpec.QWORD else [f"push {v}"]
                return [MarshalStep(idx, lambda st: sym, pushes=4 * len(sym))]
            bits = literal_bits(v, spec, arg.pos)
            if isinstance(v, int) and not spec.is_float and spec.size <= 4:
                return [MarshalStep(idx, lambda st: [f"push {v}"], pushes=4)]
            count = align_up(spec.size, 4) // 4
            pushed = [f"push {_hex(d)}" for d in reversed(_dwords(bits, count))]
            return [MarshalStep(idx, lambda st: pushed, pushes=4 * count)]

        if isinstance(arg, MemoryArg):
            a = arg.address
            reads = _address_reads(a)
            if spec.size == 4:
                return [MarshalStep(idx, lambda st: [f"push dword {st.mem(a)}"], reads, pushes=4)]
            if spec in (SizeSpec.WORD, SizeSpec.BYTE):
                return [MarshalStep(idx, lambda st: [f"movzx {S}, {spec.value} {st.mem(a)}", f"push {S}"],
                                    reads, scratch, pushes=4)]
            if spec is SizeSpec.QWORD:
                # the high half moves esp before the low half is read
                low = 4 if "sp" in a.families else 0
                return [MarshalStep(idx, lambda st: [f"push dword {st.mem(a, 4)}", f"push dword {st.mem(a, low)}"],
                                    reads, pushes=8)]
            if spec is SizeSpec.DOUBLE:
                return [MarshalStep(idx, lambda st: [f"movsd {X}, qword {st.mem(a)}", "sub esp, 8",
                                                     f"movsd qword [esp], {X}"],
                                    reads, frozenset({X}), pushes=8)]
            return [MarshalStep(idx, lambda st: [f"fld tword {st.mem(a)}", "sub esp, 12", "fstp tword [esp]"],
                                reads, pushes=12)]

        if isinstance(arg, AddressArg):
            a = arg.address
            reads = _address_reads(a)
            if not a.registers:
                return [MarshalStep(idx, lambda st: [f"push {a.render(arch)}"], pushes=4)]
            in_place = lambda st: _accumulate(st, a, "dword [esp]", push=True)
            if len(a.registers) == 1:
                return [MarshalStep(idx, in_place, reads, pushes=4)]
            return [MarshalStep(idx, lambda st: [f"lea {S}, {st.mem(a)}", f"push {S}"], reads, scratch,
                                in_place=in_place if _can_accumulate(a, arch) else None, pushes=4)]

        if isinstance(arg, SeparatedQwordArg):
            h, l = arg.high, arg.low
            return [MarshalStep(idx, lambda st: [f"push {st.reg(h)}", f"push {st.reg(l)}"],
                                (RegisterRead(h.family), RegisterRead(l.family)), pushes=8)]

        if isinstance(arg, (ConstantArg, StringArg)):
            label = self._intern(arg, pool).label
            return [MarshalStep(idx, lambda st: [f"push {label}"], pushes=4)]

        steps = self._va_steps(arg, idx, pool)

        def pointer(st):
            off = st.depth + st.area_base
            return ["push esp"] + ([f"add dword [esp], {off}"] if off else [])

        steps.append(MarshalStep(idx, pointer, (RegisterRead("sp", ReadMode.ADDRESS, True),), pushes=4))
        return steps

    # --- stores into a stack slot (va_list values, x64 stack arguments)

    def _store_steps(self, arg: Argument, idx: int, dest, pool: ConstantPool, by_ref_real: bool) -> List[MarshalStep]:
        arch = self.arch
        spec = effective_spec(arg, arch)
        S32 = arch.sized(arch.scratch, 32).name
        SW = arch.sized(arch.scratch).name
        X = arch.float_scratch
        scratch = frozenset({arch.scratch})
        wide = arch.word_spec.value

        if isinstance(arg, RegisterArg):
            r = arg.register
            reads = (RegisterRead(r.family),)
            if r.sse:
                if spec.size == 8:
                    return [MarshalStep(idx, lambda st: [f"movsd qword {dest(st)}, {st.reg(r)}"], reads)]
                return [MarshalStep(idx, lambda st: [f"movss dword {dest(st)}, {st.reg(r)}"], reads)]
            upper = [lambda st: f"mov dword {dest(st, 4)}, 0"] if spec.size == 8 else []
            if r.high or r.bits < 32:
                return [MarshalStep(idx, lambda st: [f"movzx {S32}, {st.reg(r)}", f"mov dword {dest(st)}, {S32}"]
                                    + [u(st) for u in upper], reads, scratch)]
            if spec.size == 8 and r.bits == 64:
                return [MarshalStep(idx, lambda st: [f"mov qword {dest(st)}, {st.reg(r)}"], reads)]
            low = arch.sized(r.family, 32)
            return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {st.reg(low)}"] + [u(st) for u in upper], reads)]

        if isinstance(arg, ImmediateArg):
            v = arg.value
            if isinstance(v, str):
                if spec.is_float:
                    raise InvalidArgumentSpecifierError(f"symbol '{v}' cannot be passed as {spec.value}", pos=arg.pos)
                if spec.size == 8 and arch.bits == 64:
                    return [MarshalStep(idx, lambda st: [f"mov {SW}, {v}", f"mov qword {dest(st)}, {SW}"], (), scratch)]
                return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {v}"]
                                    + ([f"mov dword {dest(st, 4)}, 0"] if spec.size == 8 else []))]
            if spec is SizeSpec.REAL and by_ref_real:
                label = pool.intern(SizeSpec.REAL.value, (float(v),)).label
                return [MarshalStep(idx, lambda st: [f"lea {SW}, [{label}]", f"mov qword {dest(st)}, {SW}"], (), scratch)]
            bits = literal_bits(v, spec, arg.pos)
            if isinstance(v, int) and not spec.is_float and spec.size <= 4:
                return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {v}"])]
            count = align_up(spec.size, 4) // 4
            chunks = _dwords(bits, count)
            return [MarshalStep(idx, lambda st: [f"mov dword {dest(st, 4 * i)}, {_hex(d)}" for i, d in enumerate(chunks)])]

        if isinstance(arg, MemoryArg):
            a = arg.address
            reads = _address_reads(a)
            if spec is SizeSpec.REAL:
                if by_ref_real:
                    return [MarshalStep(idx, lambda st: [f"lea {SW}, {st.mem(a)}", f"mov {dest(st)}, {SW}"], reads, scratch)]
                return [MarshalStep(idx, lambda st: [f"fld tword {st.mem(a)}", f"fstp tword {dest(st)}"], reads)]
            if spec is SizeSpec.QWORD and arch.bits == 64:
                return [MarshalStep(idx, lambda st: [f"mov {SW}, qword {st.mem(a)}", f"mov qword {dest(st)}, {SW}"],
                                    reads, scratch)]
            if spec.size == 8:
                return [MarshalStep(idx, lambda st: [f"movsd {X}, qword {st.mem(a)}", f"movsd qword {dest(st)}, {X}"],
                                    reads, frozenset({X}))]
            if spec.size == 4:
                return [MarshalStep(idx, lambda st: [f"mov {S32}, dword {st.mem(a)}", f"mov dword {dest(st)}, {S32}"],
                                    reads, scratch)]
            return [MarshalStep(idx, lambda st: [f"movzx {S32}, {spec.value} {st.mem(a)}", f"mov dword {dest(st)}, {S32}"],
                                reads, scratch)]

        if isinstance(arg, AddressArg):
            a = arg.address
            reads = _address_reads(a)
            via_scratch = lambda st: [f"lea {SW}, {st.mem(a)}", f"mov {wide} {dest(st)}, {SW}"]
            if not a.registers:
                if arch.bits == 32:
                    return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {a.render(arch)}"])]
                return [MarshalStep(idx, via_scratch, (), scratch)]
            in_place = lambda st: _accumulate(st, a, f"{wide} {dest(st)}")
            if not _can_accumulate(a, arch):
                return [MarshalStep(idx, via_scratch, reads, scratch)]
            if len(a.registers) == 1:
                return [MarshalStep(idx, in_place, reads)]
            return [MarshalStep(idx, via_scratch, reads, scratch, in_place=in_place)]

        if isinstance(arg, SeparatedQwordArg):
            h, l = arg.high, arg.low
            return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {st.reg(l)}", f"mov dword {dest(st, 4)}, {st.reg(h)}"],
                                (RegisterRead(h.family), RegisterRead(l.family)))]

        if isinstance(arg, (ConstantArg, StringArg)):
            label = self._intern(arg, pool).label
            if arch.bits == 32:
                return [MarshalStep(idx, lambda st: [f"mov dword {dest(st)}, {label}"])]
            return [MarshalStep(idx, lambda st: [f"lea {SW}, [{label}]", f"mov qword {dest(st)}, {SW}"], (), scratch)]

        raise GenerationError("va_list cannot be stored here", pos=arg.pos)

    # --- x64: registers first, the rest above the shadow space

    def _move_steps(self, arg: Argument, idx: int, conv: CallingConvention, pool: ConstantPool) -> List[MarshalStep]:
        arch = self.arch
        if idx > len(conv.integer_arg_registers):
            off = arch.word * (idx - 1)
            dest = lambda st, extra=0: f"[rsp+{off + extra}]"
            if isinstance(arg, VaListArg):
                steps = self._va_steps(arg, idx, pool)
                steps.append(MarshalStep(idx, lambda st: [f"mov qword {dest(st)}, rsp", f"add qword {dest(st)}, {st.area_base}"],
                                         (RegisterRead("sp", ReadMode.ADDRESS, True),)))
                return steps
            return self._store_steps(arg, idx, dest, pool, by_ref_real=True)

        spec = effective_spec(arg, arch)
        gpr = arch.register(conv.integer_arg_registers[idx - 1])
        xmm = arch.register(conv.float_arg_registers[idx - 1])
        d64, d32, xd = gpr.name, arch.sized(gpr.family, 32).name, xmm.name
        S32 = arch.sized(arch.scratch, 32).name
        SW = arch.sized(arch.scratch).name
        floating = spec in (SizeSpec.DOUBLE, SizeSpec.FLOAT) and isinstance(arg, (RegisterArg, ImmediateArg, MemoryArg))
        dest_fam = xmm.family if floating else gpr.family
        spare = gpr.family if floating else None

        def step(render, reads=(), extra=()):
            return [MarshalStep(idx, render, tuple(reads), frozenset({dest_fam, *extra}), dest=dest_fam, spare=spare)]

        if isinstance(arg, RegisterArg):
            r = arg.register
            reads = (RegisterRead(r.family),)
            if r.sse:
                if floating:
                    return step(lambda st: [f"movaps {xd}, {st.reg(r)}"], reads)
                if spec is SizeSpec.QWORD:
                    return step(lambda st: [f"movq {d64}, {st.reg(r)}"], reads)
                return step(lambda st: [f"movd {d32}, {st.reg(r)}"], reads)
            low = arch.sized(r.family, 32)
            if floating:
                return step(lambda st: [f"movd {xd}, {st.reg(low)}"], reads)
            if r.high or r.bits < 32:
                return step(lambda st: [f"movzx {d32}, {st.reg(r)}"], reads)
            if spec is SizeSpec.QWORD and r.bits == 64:
                return step(lambda st: [f"mov {d64}, {st.reg(r)}"], reads)
            return step(lambda st: [f"mov {d32}, {st.reg(low)}"], reads)

        if isinstance(arg, ImmediateArg):
            v = arg.value
            if isinstance(v, str):
                if spec.is_float:
                    raise InvalidArgumentSpecifierError(f"symbol '{v}' cannot be passed as {spec.value}", pos=arg.pos)
                return step(lambda st: [f"mov {d64 if spec is SizeSpec.QWORD else d32}, {v}"])
            if spec is SizeSpec.REAL:
                label = pool.intern(SizeSpec.REAL.value, (float(v),)).label
                return step(lambda st: [f"lea {d64}, [{label}]"])
            bits = literal_bits(v, spec, arg.pos)
            if floating:
                if bits == 0:
                    return step(lambda st: [f"xorps {xd}, {xd}"])
                if spec is SizeSpec.DOUBLE:
                    return step(lambda st: [f"mov {SW}, {_hex(bits)}", f"movq {xd}, {SW}"], extra=(arch.scratch,))
                return step(lambda st: [f"mov {S32}, {_hex(bits)}", f"movd {xd}, {S32}"], extra=(arch.scratch,))
            if isinstance(v, int) and 0 <= v < (1 << 32):
                return step(lambda st: [f"mov {d32}, {v}"])
            if isinstance(v, int):
                return step(lambda st: [f"mov {d64 if spec is SizeSpec.QWORD else d32}, {v}"])
            return step(lambda st: [f"mov {d64 if spec.size == 8 else d32}, {_hex(bits)}"])

        if isinstance(arg, MemoryArg):
            a = arg.address
            reads = _address_reads(a)
            if spec is SizeSpec.REAL:
                return step(lambda st: [f"lea {d64}, {st.mem(a)}"], reads)
            if spec is SizeSpec.DOUBLE:
                return step(lambda st: [f"movsd {xd}, qword {st.mem(a)}"], reads)
            if spec is SizeSpec.FLOAT:
                return step(lambda st: [f"movss {xd}, dword {st.mem(a)}"], reads)
            if spec is SizeSpec.QWORD:
                return step(lambda st: [f"mov {d64}, qword {st.mem(a)}"], reads)
            if spec is SizeSpec.DWORD:
                return step(lambda st: [f"mov {d32}, dword {st.mem(a)}"], reads)
            return step(lambda st: [f"movzx {d32}, {spec.value} {st.mem(a)}"], reads)

        if isinstance(arg, AddressArg):
            a = arg.address
            reg = d64 if spec is SizeSpec.QWORD else d32
            return step(lambda st: [f"lea {reg}, {st.mem(a)}"], _address_reads(a))

        if isinstance(arg, SeparatedQwordArg):
            h, l = arg.high, arg.low

            def combine(st):
                hi, lo = st.reg(h), st.reg(l)
                if st.renames.get(h.family, h.family) == arch.scratch:
                    return [f"mov {d32}, {hi}", f"shl {d64}, 32", f"mov {S32}, {lo}", f"or {d64}, {SW}"]
                return [f"mov {S32}, {lo}", f"mov {d32}, {hi}", f"shl {d64}, 32", f"or {d64}, {SW}"]

            return step(combine, (RegisterRead(h.family), RegisterRead(l.family)), extra=(arch.scratch,))

        if isinstance(arg, (ConstantArg, StringArg)):
            label = self._intern(arg, pool).label
            return step(lambda st: [f"lea {d64}, [{label}]"])

        steps = self._va_steps(arg, idx, pool)
        steps += step(lambda st: [f"lea {d64}, [rsp+{st.area_base}]"], (RegisterRead("sp", ReadMode.ADDRESS, True),))
        return steps

# ============================================================
# Procedure Definition Compiler
# ============================================================

@dataclass
class GeneratorConfig:
    arch: str = "x86"
    default_convention: str = DEFAULT_CONVENTION
    strip_unreferenced: bool = True
    strict_va_list: bool = True
    trace: bool = False
    color: bool = True

class CompilationContext:
    """Everything one translation unit mutates while it is read."""

    def __init__(self, config: Optional[GeneratorConfig] = None, registry: ConventionRegistry = REGISTRY):
        self.config = config or GeneratorConfig()
        self.arch = architecture(self.config.arch)
        self.registry = registry
        self.frame = FrameModeState()
        self.scopes = ScopeResolver()
        self.aggregates: Dict[str, int] = {}
        self.procedures: Dict[str, ProcedureSymbol] = {}
        self.unit_pool = ConstantPool("")
        self.items: List[Union[str, ProcedureSymbol]] = []
        self.public: List[str] = []
        self.root_references: List[str] = []
        self.started = False
        self.warnings: List[Tuple[str, int]] = []

    def emit(self, line: str) -> None:
        sym = self.scopes.current
        if sym is not None:
            sym.code.append(line)
        else:
            self.items.append(line)

    def warn(self, msg: str, pos: int) -> None:
        """Records a warning; ``pos`` follows the same relative-then-anchored rule as errors."""
        LOGGER.debug("warning: %s", msg)
        self.warnings.append((msg, pos))

    def reference(self, name: str) -> None:
        sym = self.scopes.current
        refs = sym.references if sym is not None else self.root_references
        if name not in refs:
            refs.append(name)

@dataclass
class ProcedureSignature:
    name: str
    nested: bool = False
    convention: Optional[str] = None
    parameters: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    uses: List[Tuple[str, int]] = field(default_factory=list)
    pos: int = 0

    @classmethod
    def from_node(cls, node: Node) -> "ProcedureSignature":
        conv, name, params, uses = node.data
        return cls(name=name.lstrip("."), nested=name.startswith("."), convention=conv,
                   parameters=[(p.data[0].lstrip("."), p.data[1]) for p in params],
                   uses=[(r.data[0], r.pos) for r in uses], pos=node.pos)

class ProcedureCompiler:
    def __init__(self, ctx: CompilationContext):
        self.ctx = ctx

    def define(self, sig: ProcedureSignature) -> ProcedureSymbol:
        ctx = self.ctx
        parent = ctx.scopes.current
        if sig.nested and parent is None:
            raise GenerationError(f"nested procedure '.{sig.name}' outside of any procedure", pos=sig.pos,
                                  hint="drop the leading '.' for a top-level procedure")
        if not sig.nested and parent is not None:
            raise GenerationError(f"procedure '{sig.name}' is defined inside '{parent.mangled_name}'", pos=sig.pos,
                                  hint=f"write '.{sig.name}' for a nested procedure")
        mode = ctx.frame.effective()
        if parent is not None and parent.frame_mode is not mode:
            raise FrameModeMismatchError(
                f"'.{sig.name}' uses the {mode.value} frame mode but '{parent.mangled_name}' uses {parent.frame_mode.value}",
                pos=sig.pos, hint="nested procedures must share their parent's frame mode")
        try:
            conv = ctx.registry.resolve(sig.convention or ctx.config.default_convention, ctx.arch)
        except UnknownConventionError as e:
            e.pos = sig.pos
            raise
        mangled = ctx.scopes.mangle(sig.name)
        if mangled in ctx.procedures:
            raise GenerationError(f"procedure '{mangled}' is already defined", pos=sig.pos)

        sym = ProcedureSymbol(name=sig.name, mangled_name=mangled, calling_convention=conv, frame_mode=mode, pos=sig.pos)
        for pname, tag in sig.parameters:
            tag, size = self._type(tag)
            if ctx.arch.bits == 64:
                # larger values travel by reference
                size = min(size, 8)
            sym.parameters.append(Parameter(pname, tag, size))
        for rname, rpos in sig.uses:
            reg = ctx.arch.register(rname)
            if reg is None or reg.sse or reg.bits != ctx.arch.bits:
                raise GenerationError(f"'{rname}' cannot be preserved with 'uses'", pos=rpos,
                                      hint=f"list {ctx.arch.bits}-bit general-purpose registers")
            if reg not in sym.preserved_registers:
                sym.preserved_registers.append(reg)

        if parent is not None:
            self.freeze(parent)
        else:
            ctx.items.append(sym)
        ctx.scopes.enter(sig.name, sym)
        ctx.procedures[mangled] = sym
        LOGGER.debug("define %s (%s, %s)", mangled, conv.id, mode.value)
        return sym

    def _type(self, tag: Optional[str]) -> Tuple[str, int]:
        arch = self.ctx.arch
        if tag is None:
            return arch.word_spec.value.upper(), arch.word
        if tag.upper() in TYPE_SPECS:
            return tag.upper(), TYPE_SPECS[tag.upper()].size
        return tag, self.ctx.aggregates.get(tag, arch.word)

    def add_locals(self, node: Node) -> None:
        sym = self.ctx.scopes.current
        if sym is None:
            raise GenerationError("'local' outside of a procedure", pos=node.pos)
        if sym.frozen:
            raise GenerationError(f"'local' after the first instruction of '{sym.mangled_name}'", pos=node.pos,
                                  hint="declare locals right after the procedure header")
        for item in node.data[0]:
            name, tag, count = item.data
            if not isinstance(count, int) or count < 1:
                raise GenerationError(f"invalid element count for '{name}'", pos=item.pos)
            tag, size = self._type(tag)
            sym.locals.append(LocalVariable(name.lstrip("."), tag, size, count))

    def freeze(self, sym: ProcedureSymbol) -> None:
        if sym.frozen:
            return
        layout = FrameLayoutEngine(self.ctx.arch).assign(sym)
        sym.code.append(f"{sym.mangled_name}:")
        if self.ctx.config.trace:
            for v in sym.parameters + sym.locals:
                sym.code.append(f"{INDENT}; .{v.name} = {v.label()}")
        sym.code += [INDENT + line for line in layout.prologue]

    def ret(self, sym: ProcedureSymbol) -> None:
        self.freeze(sym)
        sym.code += [INDENT + line for line in sym.layout.epilogue]
        sym.ended_with_epilogue = True

    def end(self, pos: int = 0) -> ProcedureSymbol:
        sym = self.ctx.scopes.current
        if sym is None:
            raise GenerationError("'endp' without an open procedure", pos=pos)
        if not sym.ended_with_epilogue:
            self.ret(sym)
        for name, at in sym.pending_children:
            if sym.child(name) is None:
                raise UnresolvedNestedNameError(f"'{sym.mangled_name}' has no nested procedure '.{name}'",
                                                hint="define it before 'endp'").anchor(at)
        return self.ctx.scopes.leave()

# ============================================================
# Translation unit driver
# ============================================================

DIRECTIVE_WORDS = {"proc", "local", "public", ".struct", ".frame", ".arch", "endp", ".endp"}

FRAME_SWITCHES = {"standard": FrameMode.STANDARD, "static": FrameMode.STATIC}

_SIZED_LABEL = re.compile(r"(?P<size>\b(?:byte|word|dword|qword|tword)\s*)?\[\s*\.(?P<name>[A-Za-z_]\w*)\s*\]")
_BARE_LABEL = re.compile(r"(?<![\w.$?@])\.([A-Za-z_]\w*)")
_WORD = re.compile(r"(?<![\w.$?@])[A-Za-z_$?@][\w$?@]*(?:\.[A-Za-z_$?@][\w$?@]*)*")

def _split_comment(line: str) -> Tuple[str, str]:
    quote = None
    for i, ch in enumerate(line):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ";":
            return line[:i], line[i:]
    return line, ""

class TranslationUnit:
    """Reads a unit line by line, then resolves reachability and renders it."""

    def __init__(self, source: Source, config: Optional[GeneratorConfig] = None):
        self.source = source
        self.context = CompilationContext(config)
        self.compiler = ProcedureCompiler(self.context)
        self.reader = ArgumentReader(self.context)
        self.calls = CallSiteGenerator(self.context)
        self._start = 0
        self._lead = 0
        self._delta = 0
        self._sizing = True

    @property
    def procedures(self) -> Dict[str, ProcedureSymbol]:
        return self.context.procedures

    @property
    def warnings(self) -> List[Tuple[str, int]]:
        return self.context.warnings

    def compile(self) -> "TranslationUnit":
        for start, raw in zip(self.source.line_offsets(), self.source.text.splitlines()):
            mark = len(self.context.warnings)
            self._start, self._lead, self._delta = start, 0, 0
            try:
                self.line(raw)
            except GenerationError as e:
                rel = self._lead if e.pos is None else max(e.pos + self._delta, self._lead)
                raise e.anchor(start + rel)
            warnings = self.context.warnings
            for i in range(mark, len(warnings)):
                msg, rel = warnings[i]
                warnings[i] = (msg, start + max(rel + self._delta, self._lead))
        sym = self.context.scopes.current
        if sym is not None:
            raise GenerationError(f"procedure '{sym.mangled_name}' is never closed",
                                  hint="add 'endp'").anchor(sym.pos)
        self.mark_reachable()
        return self

    def line(self, raw: str) -> None:
        text = raw.strip()
        if not text or text.startswith(";"):
            self.context.emit(raw)
            return
        self._lead = len(raw) - len(raw.lstrip())
        word = text.split(None, 1)[0]
        key = word[1:] if word.startswith("@") else word

        if word in DIRECTIVE_WORDS:
            self._delta = self._lead
            self.directive(parse_directive(text), raw)
        elif key in INVOCATION_KEYWORDS:
            self._delta = self._lead + len(word) - len("invoke")
            node = parse_directive("invoke" + text[len(word):])
            self.invoke(node, key)
        elif _split_comment(text)[0].strip() == "ret" and self.context.scopes.current is not None:
            self.compiler.ret(self.context.scopes.current)
        else:
            self.body(raw)

    def directive(self, node: Node, raw: str) -> None:
        ctx = self.context
        kind = node.kind
        if kind == "proc":
            sym = self.compiler.define(ProcedureSignature.from_node(node))
            # kept absolute for diagnostics raised after the line is gone
            sym.pos += self._start + self._delta
            ctx.started = True
        elif kind == "local":
            self.compiler.add_locals(node)
        elif kind == "endp":
            self.compiler.end(node.pos)
        elif kind == "public":
            ctx.public.extend(node.data[0])
            ctx.emit(raw)
        elif kind == "struct":
            name, size = node.data
            if not isinstance(size, int) or size <= 0:
                raise GenerationError(f"invalid size for aggregate '{name}'", pos=node.pos)
            ctx.aggregates[name] = size
        elif kind == "frame":
            self.frame_switch(node.data[0], node.pos)
        elif kind == "arch":
            if ctx.started:
                raise GenerationError("'.arch' must come before any procedure or invocation", pos=node.pos)
            ctx.arch = architecture(node.data[0])
        else:
            raise GenerationError(f"'{kind}' is not allowed here", pos=node.pos)

    def frame_switch(self, name: str, pos: int) -> FrameMode:
        state = self.context.frame
        if name == "previous":
            return state.restore_previous()
        mode = FRAME_SWITCHES.get(name)
        if mode is None:
            raise GenerationError(f"unknown frame mode '{name}'", pos=pos, hint="use standard, static or previous")
        return state.set_mode(mode)

    def invoke(self, node: Node, keyword: str) -> CallEmission:
        ctx = self.context
        ctx.started = True
        conv_name = INVOCATION_KEYWORDS[keyword] or ctx.config.default_convention
        try:
            conv = ctx.registry.resolve(conv_name, ctx.arch)
        except UnknownConventionError as e:
            e.pos = 0
            raise
        owner = ctx.scopes.current
        if owner is not None:
            self.compiler.freeze(owner)
            owner.ended_with_epilogue = False

        target_node, arg_nodes = node.data
        target = self.reader.target(target_node)
        target_symbol = None
        if isinstance(target, str):
            target, target_symbol = self.call_target(target, target_node.pos)
        arguments = [self.reader.argument(a) for a in arg_nodes]
        if target_symbol is not None and target_symbol.calling_convention is not conv:
            ctx.warn(f"{target_symbol.mangled_name} is declared {target_symbol.calling_convention.id} "
                     f"but called with {conv.id}", target_node.pos)

        emission = self.calls.emit(CallSite(target, conv, arguments, owner, target_symbol, node.pos))
        if ctx.config.trace:
            shown = target if isinstance(target, str) else getattr(target, "name", None) or f"[{target.render(ctx.arch)}]"
            ctx.emit(f"{INDENT}; {keyword} {shown}")
        for line in emission.lines:
            ctx.emit(INDENT + line)
        return emission

    def call_target(self, name: str, pos: int) -> Tuple[str, Optional[ProcedureSymbol]]:
        ctx = self.context
        owner = ctx.scopes.current
        if name.startswith("."):
            if owner is None:
                raise UnresolvedNestedNameError(f"'{name}' names a nested procedure outside of any procedure", pos=pos)
            try:
                child = ctx.scopes.resolve_child(name)
            except UnresolvedNestedNameError:
                # may still be defined before this procedure ends
                owner.pending_children.append((name[1:], self._start + self._delta + pos))
                ctx.reference(name)
                return f"{owner.mangled_name}.{name[1:]}", None
            ctx.reference(child.mangled_name)
            return child.mangled_name, child
        sym = self._visible(name)
        if sym is not None:
            ctx.reference(sym.mangled_name)
            return sym.mangled_name, sym
        ctx.reference(name)
        return name, ctx.procedures.get(name)

    def _visible(self, name: str) -> Optional[ProcedureSymbol]:
        scopes = self.context.scopes
        if not any(name in s.names for s in scopes.stack):
            return None
        return scopes.resolve_reference(name)

    def body(self, raw: str) -> None:
        ctx = self.context
        sym = ctx.scopes.current
        if sym is not None:
            self.compiler.freeze(sym)
            sym.ended_with_epilogue = False
        code, comment = _split_comment(raw)
        self._sizing = not code.strip().lower().startswith("lea")
        code = _SIZED_LABEL.sub(self._sized_label, code)
        code = _BARE_LABEL.sub(self._bare_label, code)
        for token in _WORD.findall(code):
            if ctx.arch.register(token) is None:
                ctx.reference(token)
        ctx.emit(code + comment)

    def _sized_label(self, m) -> str:
        var = self.context.scopes.lookup_variable(m.group("name"))
        if var is None:
            return m.group(0)
        size = m.group("size")
        if not size and self._sizing and var.count == 1:
            spec = var.declared_size
            size = f"{ptr_prefix(spec)} " if spec is not None else ""
        return f"{size}[{var.label()}]"

    def _bare_label(self, m) -> str:
        var = self.context.scopes.lookup_variable(m.group(1))
        return var.label() if var is not None else m.group(0)

    # --- reachability and output

    def mark_reachable(self) -> None:
        ctx = self.context
        queue: List[ProcedureSymbol] = []

        def visit(owner, names):
            for name in names:
                sym = self.lookup(owner, name)
                if sym is not None and not sym.referenced:
                    sym.referenced = True
                    queue.append(sym)

        visit(None, ctx.root_references + ctx.public)
        while queue:
            sym = queue.pop(0)
            visit(sym, sym.references)
        LOGGER.debug("reachable: %s", ", ".join(n for n, s in ctx.procedures.items() if s.referenced) or "-")

    def lookup(self, owner: Optional[ProcedureSymbol], name: str) -> Optional[ProcedureSymbol]:
        if name.startswith("."):
            if owner is None:
                return None
            return owner.child(name[1:])
        if owner is not None:
            for anc in owner.ancestors():
                if anc.name == name:
                    return anc
        return self.context.procedures.get(name)

    def render(self) -> str:
        out: List[str] = []
        for item in self.context.items:
            if isinstance(item, ProcedureSymbol):
                self._render_procedure(item, out)
            else:
                out.append(item)
        out += self.context.unit_pool.render()
        return "\n".join(out) + "\n"

    def _render_procedure(self, sym: ProcedureSymbol, out: List[str]) -> None:
        if self.context.config.strip_unreferenced and not sym.referenced:
            LOGGER.debug("dropping unreferenced %s (%d pool entries)", sym.mangled_name, len(sym.pool))
            return
        out += sym.code
        out += sym.pool.render()
        for child in sym.children:
            self._render_procedure(child, out)

def compile_unit(text: str, config: Optional[GeneratorConfig] = None, path: str = "<input>") -> TranslationUnit:
    return TranslationUnit(Source.from_text(text, path), config).compile()

def generate(text: str, config: Optional[GeneratorConfig] = None, path: str = "<input>") -> str:
    return compile_unit(text, config, path).render()

# ============================================================
# Demo and CLI
# ============================================================

EXAMPLE = r'''; procgen demo unit
.arch x86
public start

proc sum(.a:DWORD, .b:DWORD)
    mov eax, [.a]
    add eax, [.b]
endp

proc cdecl report(.fmt, .count) uses ebx esi
    local .buf:BYTE[16]
    lea ebx, [.buf]
    @ccall printf, "total: %d (%s)\n", [.count], addr ebx
    invoke .format, <dword 1, 2, 3>
    ret

    proc .format(.values)
        mov esi, [.values]
    .endp
endp

proc start
    @stdcall sum, 2, 3
    @ccall report, "x", eax
    @ccall vprintf, "%d %d %f\n", va_list {10, [eax], double 1.5}
endp
'''

def _arch_arg(value: str) -> str:
    key = ARCH_ALIASES.get(value.lower())
    if key is None:
        raise argparse.ArgumentTypeError(f"unknown architecture '{value}' (use x86 or x64)")
    return key

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="procgen", description="Generate procedure frames and call sequences")
    ap.add_argument("inputs", nargs="*", help="units to translate (none: the built-in demo)")
    ap.add_argument("-o", "--output", help="write the generated text here instead of stdout")
    ap.add_argument("--arch", type=_arch_arg, default=None, help="x86 or x64 (default: host)")
    ap.add_argument("--trace", action="store_true", help="annotate offsets and preservation steps")
    ap.add_argument("--keep-unreferenced", action="store_true", help="emit procedures nothing references")
    ap.add_argument("--lenient-va-list", action="store_true", help="let a second va_list share the first block")
    ap.add_argument("--no-color", action="store_true", help="plain diagnostics")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return ap

def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    config = GeneratorConfig(
        arch=args.arch or host_architecture(),
        strip_unreferenced=not args.keep_unreferenced,
        strict_va_list=not args.lenient_va_list,
        trace=args.trace,
        color=not args.no_color,
    )
    sink = ErrorSink(use_color=config.color)

    if args.inputs:
        sources = [Source.from_path(p) for p in args.inputs]
    else:
        print("No inputs provided. Translating the demo unit ...", file=sys.stderr)
        sources = [Source.from_text(EXAMPLE, "<demo>")]

    chunks = []
    for src in sources:
        try:
            unit = TranslationUnit(src, config).compile()
            chunks.append(unit.render())
        except GenerationError as e:
            sink.error(e.msg, src, e.pos or 0, e.hint)
            continue
        for msg, pos in unit.warnings:
            sink.warning(msg, src, pos)
    if not sink.ok():
        sink.dump()
        return 1
    if sink.warnings:
        sink.dump(sys.stderr)

    text = "\n".join(chunks)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"Wrote {args.output}")
    else:
        sys.stdout.write(text)
    return 0

if __name__ == "__main__":
    sys.exit(main())
