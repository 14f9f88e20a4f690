"""Public package exports for the CIL opcode signature scanner."""

from .loader import ModuleLocator, ModuleUnavailableError, load_module
from .matcher import SignatureMatcher, find_by_signature
from .metadata import MetadataError, read_assembly
from .module import Candidate, MemberDescriptor, MemberIdentity, ModuleIndex, TypeDescriptor
from .opcodes import OPCODES, OpCode, OperandKind, UnknownOpcodeError, by_name, lookup
from .reader import Instruction, OpcodeReader, read_instructions, read_opcodes
from .registry import (
    LazySignature,
    ResolutionState,
    SignatureRegistry,
    UnresolvedSignatureError,
    load_catalog,
)
from .signature import MemberKind, Signature, contains_run

__all__ = [
    "Candidate",
    "Instruction",
    "LazySignature",
    "MemberDescriptor",
    "MemberIdentity",
    "MemberKind",
    "MetadataError",
    "ModuleIndex",
    "ModuleLocator",
    "ModuleUnavailableError",
    "OPCODES",
    "OpCode",
    "OpcodeReader",
    "OperandKind",
    "ResolutionState",
    "Signature",
    "SignatureMatcher",
    "SignatureRegistry",
    "TypeDescriptor",
    "UnknownOpcodeError",
    "UnresolvedSignatureError",
    "by_name",
    "contains_run",
    "find_by_signature",
    "load_catalog",
    "load_module",
    "lookup",
    "read_assembly",
    "read_instructions",
    "read_opcodes",
]
