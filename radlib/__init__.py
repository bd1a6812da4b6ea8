# radlib/__init__.py
from .errors import RadError, FormatError, SchemaError
from .models.tags import TagType, TagScope, TagDefinition
from .models.header import FileHeader, HeaderFlags
from .models.record import Record, Mapping, UsaClass
from .models.eqclass import EqClassCollection, EqClassList
from .formats.schema import TagSchema
from .formats.chunk import Chunk
from .formats.cursor import RecordCursor, RecordView
from .formats.eq_matrix import EqClassMatrix

# Convenience re-exports for whole-stream and parallel use
from .formats.rad import RadReader, RadWriter, read_header
from .engine.parallel import ParallelDecodeEngine, EngineOptions
