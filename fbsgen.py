#!/usr/bin/env python3
from __future__ import annotations

import keyword
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from prettyprinter import install_extras, pprint

# Pretty printer dataclasses support
install_extras(include=['dataclasses'], warn_on_error=True)


TOOL_NAME = "fbsgen"
RESERVED_TABLE = "Pagination"
BUILDER_CAPACITY = 1024


def to_camel(name: str) -> str:
    parts = re.split(r'[_\-\s.]+', name)
    return "".join(part[0].upper() + part[1:] for part in parts if part)


def to_lower_camel(name: str) -> str:
    camel = to_camel(name)
    return camel[:1].lower() + camel[1:]


@dataclass(frozen=True)
class MappedType:
    is_scalar: bool = False
    go_type: str = ""
    python_type: str = ""
    python_default: str = "None"


# Returned for any type name the mapping does not know about
UNKNOWN_TYPE = MappedType()

STRING_TYPE = "string"
BUFFER_TYPE = "[ubyte]"

TYPE_MAPPING = MappingProxyType({
    'long': MappedType(is_scalar=True, go_type="int64", python_type="int", python_default="0"),
    'int': MappedType(is_scalar=True, go_type="int32", python_type="int", python_default="0"),
    'float': MappedType(is_scalar=True, go_type="float32", python_type="float", python_default="0.0"),
    'double': MappedType(is_scalar=True, go_type="float64", python_type="float", python_default="0.0"),
    'bool': MappedType(is_scalar=True, go_type="bool", python_type="bool", python_default="False"),
    STRING_TYPE: MappedType(is_scalar=False, go_type="string", python_type="str", python_default='""'),
    BUFFER_TYPE: MappedType(is_scalar=False, go_type="[]byte", python_type="bytes", python_default='b""'),
})


def lookup_type(type_name: str) -> MappedType:
    return TYPE_MAPPING.get(type_name, UNKNOWN_TYPE)


@dataclass
class FieldDef:
    name: str
    type: str

    @property
    def mapped(self) -> MappedType:
        return lookup_type(self.type)

    @property
    def is_scalar(self) -> bool:
        return self.mapped.is_scalar

    @property
    def is_string(self) -> bool:
        return self.type == STRING_TYPE

    @property
    def is_buffer(self) -> bool:
        return self.type == BUFFER_TYPE


@dataclass
class TableDef:
    name: str
    fields: List[FieldDef] = field(default_factory=list)


@dataclass
class SchemaModel:
    namespace: str = ""
    package: str = ""
    root_type: Optional[str] = None
    tables: List[TableDef] = field(default_factory=list)

    @property
    def namespace_path(self) -> Path:
        return Path(*[segment for segment in self.namespace.split('.') if segment])


class SchemaParser:
    """
    Line-at-a-time schema parser.

    Every line is stripped and checked against `rules` in order. The first
    pattern found anywhere in the line hands its groups to the named handler
    and the rest of the rules are skipped for that line.
    """

    comment_marker = "//"
    rules: Tuple[Tuple[re.Pattern, str], ...] = (
        (re.compile(r'namespace\s+(.+?)\s?;'), 'on_namespace'),
        (re.compile(r'table\s+(\w+)\s?\{'), 'on_table'),
        (re.compile(r'root_type\s+(\w+)\s?;'), 'on_root_type'),
        (re.compile(r'(\w+)\s?:\s?([\[\]\w]+)\s?;'), 'on_field'),
    )

    def __init__(self):
        self.schema = SchemaModel()
        self.pending_table: Optional[TableDef] = None

    def on_namespace(self, namespace):
        namespace = namespace.strip()
        self.schema.namespace = namespace
        self.schema.package = namespace.split('.')[-1]

    def on_table(self, name):
        if name == RESERVED_TABLE:
            self.pending_table = None
            return
        self.pending_table = TableDef(name)
        self.schema.tables.append(self.pending_table)

    def on_root_type(self, name):
        self.schema.root_type = name

    def on_field(self, name, type_name):
        if self.pending_table is None:
            return
        self.pending_table.fields.append(FieldDef(name, type_name))

    def feed(self, line: str):
        line = line.strip()
        if line.startswith(self.comment_marker):
            return
        for pattern, handler in self.rules:
            match = pattern.search(line)
            if match:
                getattr(self, handler)(*match.groups())
                return

    def parse(self, lines: Iterable[str]) -> SchemaModel:
        for line in lines:
            self.feed(line)
        self.pending_table = None
        return self.schema


def parse_schema(text: str) -> SchemaModel:
    return SchemaParser().parse(text.splitlines())


def parse_schema_file(path: Path) -> SchemaModel:
    # OSError and UnicodeDecodeError raised mid-read propagate to the caller
    with open(path, "r") as f:
        return SchemaParser().parse(f)


def validate_types(schema: SchemaModel):
    for table in schema.tables:
        for field_def in table.fields:
            if field_def.type not in TYPE_MAPPING:
                raise TypeError("Field {}.{} has an unrecognized type: '{}'".format(
                    table.name, field_def.name, field_def.type))


@dataclass
class Generator:
    """
    Line-oriented source emitter shared by the target languages.

    Lines go through `str.format` with the current format parameters, so
    literal braces in emitted code have to be doubled.
    """
    source_name: str = ""
    header_comment: str = "//"
    file_suffix: str = ""
    indentation: str = '    '
    indentation_level: int = 0
    current_output: List[str] = field(default_factory=list)
    format_parameters: Dict[str, str] = field(default_factory=dict)
    format_parameters_stack: List[Dict[str, str]] = field(default_factory=list)

    def set_parameter(self, key, value):
        self.format_parameters[key] = value

    def push_parameters(self):
        self.format_parameters_stack.append(self.format_parameters.copy())

    def pop_parameters(self):
        self.format_parameters = self.format_parameters_stack.pop()

    def add_line(self, code=None):
        if code:
            self.current_output.append(
                self.indentation * self.indentation_level + code.format(**self.format_parameters)
            )
        else:
            self.current_output.append('')

    def skip_line(self, count=1):
        for i in range(count):
            self.current_output.append('')

    def start_block(self, code=""):
        if code:
            self.add_line(code)
        self.indentation_level += 1

    def end_block(self, code=""):
        self.indentation_level -= 1
        if code:
            self.add_line(code)

    def output(self):
        result = "\n".join(self.current_output) + "\n"
        self.current_output = []
        self.format_parameters = {}
        return result

    def generate_header(self):
        self.set_parameter("marker", self.header_comment)
        self.set_parameter("tool", TOOL_NAME)
        self.set_parameter("source", self.source_name)
        self.add_line("{marker} Code generated by {tool}. DO NOT EDIT.")
        self.add_line("{marker} source: {source}")
        self.skip_line()

    def output_name(self, source_name: str) -> str:
        stem = source_name[:-len(".fbs")] if source_name.endswith(".fbs") else source_name
        return stem + self.file_suffix

    def generate(self, schema: SchemaModel) -> str:
        raise NotImplementedError


@dataclass
class GoGenerator(Generator):
    header_comment: str = "//"
    file_suffix: str = ".fb.go"
    indentation: str = '\t'

    def set_table_parameters(self, table: TableDef):
        self.set_parameter("table", to_camel(table.name))

    def set_field_parameters(self, field_def: FieldDef):
        self.set_parameter("field", to_camel(field_def.name))
        self.set_parameter("local", to_lower_camel(field_def.name) + "Offset")
        self.set_parameter("go_type", field_def.mapped.go_type)

    def generate_carrier(self, table: TableDef):
        self.start_block("type X{table} struct {{")
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            self.add_line("{field} {go_type}")
        self.end_block("}}")

    def generate_create(self, table: TableDef):
        self.add_line("// Create to build flat buf binary - {table}")
        self.start_block("func (value *X{table}) Create() []byte {{")
        self.add_line("builder := flatbuffers.NewBuilder({})".format(BUILDER_CAPACITY))

        # Offsets have to exist before the table is started
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_string:
                self.add_line("{local} := builder.CreateString(value.{field})")
            elif field_def.is_buffer:
                self.add_line("{table}Start{field}Vector(builder, len(value.{field}))")
                self.start_block("for i := len(value.{field}) - 1; i >= 0; i-- {{")
                self.add_line("builder.PrependByte(value.{field}[i])")
                self.end_block("}}")
                self.add_line("{local} := builder.EndVector(len(value.{field}))")

        self.add_line("{table}Start(builder)")
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_scalar:
                self.add_line("{table}Add{field}(builder, value.{field})")
            elif field_def.is_string or field_def.is_buffer:
                self.add_line("{table}Add{field}(builder, {local})")

        self.add_line("new{table} := {table}End(builder)")
        self.add_line("builder.Finish(new{table})")
        self.add_line("return builder.FinishedBytes()")
        self.end_block("}}")

    def generate_read(self, table: TableDef):
        self.add_line("// Read to Read {table} from bytes")
        self.start_block("func (value *X{table}) Read(buf []byte) *X{table} {{")
        self.add_line("new{table} := GetRootAs{table}(buf, 0)")
        self.start_block("if new{table} == nil {{")
        self.add_line("return nil")
        self.end_block("}}")
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_scalar:
                self.add_line("value.{field} = new{table}.{field}()")
            elif field_def.is_string:
                self.add_line("value.{field} = string(new{table}.{field}())")
        self.add_line("return value")
        self.end_block("}}")

    def generate(self, schema: SchemaModel) -> str:
        self.generate_header()
        self.set_parameter("package", schema.package)
        self.add_line("package {package}")
        self.skip_line()
        self.start_block("import (")
        self.add_line('flatbuffers "github.com/google/flatbuffers/go"')
        self.end_block(")")

        for table in schema.tables:
            self.push_parameters()
            self.set_table_parameters(table)
            self.skip_line()
            self.generate_carrier(table)
            self.skip_line()
            self.generate_create(table)
            self.skip_line()
            self.generate_read(table)
            self.pop_parameters()

        return self.output()


# Generated methods share the carrier namespace with the fields
RESERVED_PYTHON_NAMES = frozenset(["create", "read"])


def python_name(name: str) -> str:
    if keyword.iskeyword(name) or name in RESERVED_PYTHON_NAMES:
        return name + "_"
    return name


@dataclass
class PythonGenerator(Generator):
    header_comment: str = "#"
    file_suffix: str = "_fb.py"

    # flatc keeps the declared table name for the module, class and helpers
    def set_table_parameters(self, table: TableDef):
        self.set_parameter("table", table.name)
        self.set_parameter("carrier", "X" + to_camel(table.name))
        self.set_parameter("reader", "new_" + table.name.lower())

    def set_field_parameters(self, field_def: FieldDef):
        mapped = field_def.mapped
        name = python_name(field_def.name)
        self.set_parameter("name", name)
        self.set_parameter("field", to_camel(field_def.name))
        self.set_parameter("local", name + "_offset")
        self.set_parameter("python_type", mapped.python_type or "Any")
        self.set_parameter("default", mapped.python_default)

    def imported_names(self, table: TableDef) -> List[str]:
        names = [table.name, table.name + "Start"]
        for field_def in table.fields:
            if field_def.is_buffer:
                names.append("{}Start{}Vector".format(table.name, to_camel(field_def.name)))
        for field_def in table.fields:
            if field_def.is_scalar or field_def.is_string or field_def.is_buffer:
                names.append("{}Add{}".format(table.name, to_camel(field_def.name)))
        names.append(table.name + "End")
        return names

    def generate_imports(self, schema: SchemaModel):
        self.add_line("from __future__ import annotations")
        self.skip_line()
        self.add_line("from dataclasses import dataclass")
        self.add_line("from typing import Any, Optional")
        self.skip_line()
        self.add_line("import flatbuffers")
        if schema.tables:
            self.skip_line()
        for table in schema.tables:
            self.set_parameter("table", table.name)
            self.set_parameter("names", ", ".join(self.imported_names(table)))
            self.add_line("from .{table} import {names}")

    def generate_carrier(self, table: TableDef):
        self.add_line("@dataclass")
        self.start_block("class {carrier}:")
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            self.add_line("{name}: {python_type} = {default}")

    def generate_create(self, table: TableDef):
        self.skip_line()
        self.start_block("def create(self) -> bytes:")
        self.add_line('"""Build a flat buf binary from this {carrier}."""')
        self.add_line("builder = flatbuffers.Builder({})".format(BUILDER_CAPACITY))

        # Offsets have to exist before the table is started
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_string:
                self.add_line("{local} = builder.CreateString(self.{name})")
            elif field_def.is_buffer:
                self.add_line("{table}Start{field}Vector(builder, len(self.{name}))")
                self.start_block("for i in reversed(range(len(self.{name}))):")
                self.add_line("builder.PrependByte(self.{name}[i])")
                self.end_block()
                self.add_line("{local} = builder.EndVector()")

        self.add_line("{table}Start(builder)")
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_scalar:
                self.add_line("{table}Add{field}(builder, self.{name})")
            elif field_def.is_string or field_def.is_buffer:
                self.add_line("{table}Add{field}(builder, {local})")

        self.add_line("{reader} = {table}End(builder)")
        self.add_line("builder.Finish({reader})")
        self.add_line("return bytes(builder.Output())")
        self.end_block()

    def generate_read(self, table: TableDef):
        self.skip_line()
        self.start_block("def read(self, buf: bytes) -> Optional[{carrier}]:")
        self.add_line('"""Read {table} from bytes into this {carrier}."""')
        self.add_line("{reader} = {table}.GetRootAs{table}(buf, 0)")
        self.start_block("if {reader} is None:")
        self.add_line("return None")
        self.end_block()
        for field_def in table.fields:
            self.set_field_parameters(field_def)
            if field_def.is_scalar:
                self.add_line("self.{name} = {reader}.{field}()")
            elif field_def.is_string:
                self.add_line('self.{name} = ({reader}.{field}() or b"").decode("utf-8")')
        self.add_line("return self")
        self.end_block()

    def generate(self, schema: SchemaModel) -> str:
        self.generate_header()
        self.generate_imports(schema)

        for table in schema.tables:
            self.push_parameters()
            self.set_table_parameters(table)
            self.skip_line(2)
            self.generate_carrier(table)
            self.generate_create(table)
            self.generate_read(table)
            self.end_block()
            self.pop_parameters()

        return self.output()


GENERATORS: Dict[str, Callable[..., Generator]] = {
    'go': GoGenerator,
    'python': PythonGenerator,
}


def generate_code(schema: SchemaModel, source_name: str, lang: str = 'go') -> str:
    return GENERATORS[lang](source_name=source_name).generate(schema)


def output_path(input_path: Path, output_root: Path, schema: SchemaModel, lang: str = 'go') -> Path:
    generator = GENERATORS[lang]()
    return output_root / schema.namespace_path / generator.output_name(input_path.name)


def write_output(path: Path, code: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(code)


def main(argv=None):
    import argparse
    parser = argparse.ArgumentParser(prog=TOOL_NAME)
    parser.add_argument('-i', '--input', type=Path, required=True, help="Input fbs file")
    parser.add_argument('-o', '--output', type=Path, required=True, help="Output folder")
    parser.add_argument('--lang', choices=sorted(GENERATORS), default='go')
    parser.add_argument('--strict', action='store_true', help="Reject fields with unknown types")
    parser.add_argument('--dump-ir', action='store_true', help="Pretty print the parsed schema")
    args = parser.parse_args(argv)

    # Read and parse schema file
    try:
        schema = parse_schema_file(args.input)
    except (OSError, UnicodeDecodeError) as e:
        print("error: cannot read schema file: {}".format(e), file=sys.stderr)
        return 1

    if args.dump_ir:
        pprint(schema)

    if args.strict:
        try:
            validate_types(schema)
        except TypeError as e:
            print("error: {}".format(e), file=sys.stderr)
            return 1

    # Generate everything before touching the output file
    code = generate_code(schema, args.input.name, args.lang)
    destination = output_path(args.input, args.output, schema, args.lang)
    try:
        write_output(destination, code)
    except OSError as e:
        print("error: cannot write output file: {}".format(e), file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
