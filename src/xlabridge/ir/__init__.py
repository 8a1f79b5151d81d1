from . import element_type
from .builder import BuilderState, XlaBuilder, XlaOp
from .computation import (
	HloComputationProto,
	HloInstructionProto,
	HloModuleProto,
	XlaComputation,
)
from .element_type import ElementType, PrimitiveType
from .literal import Literal
from .shape import ProgramShape, Shape

__all__ = [
	"element_type",
	"ElementType",
	"PrimitiveType",
	"Shape",
	"ProgramShape",
	"Literal",
	"XlaBuilder",
	"XlaOp",
	"BuilderState",
	"XlaComputation",
	"HloModuleProto",
	"HloComputationProto",
	"HloInstructionProto",
]
