import importlib.resources
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

from google.protobuf import descriptor_pb2, descriptor_pool
from grpc_tools import protoc

from invoker.catalog import SchemaCatalog
from invoker.errors import DescriptorError
from invoker.helper import helper


class grpcprotoclient(helper):
    """Compiles a .proto file with protoc and exposes it as a SchemaCatalog."""

    def __init__(self, proto_file, proto_path=None):
        super().__init__()
        self.proto_file = proto_file
        self.proto_path = proto_path
        self._catalog: Optional[SchemaCatalog] = None

    def extract_imports(self, proto_file) -> List[str]:
        imports = []
        with open(proto_file, "r") as f:
            for line in f:
                match = re.match(r'\s*import\s+(?:public\s+|weak\s+)?"(.+?)"\s*;', line)
                if match:
                    imports.append(match.group(1))
        return imports

    def find_proto_root(self, proto_file) -> str:
        """Closest ancestor directory from which every non well-known import resolves."""
        proto_path = Path(proto_file).resolve()
        imports = [imp for imp in self.extract_imports(proto_path) if not imp.startswith("google/protobuf/")]
        candidate = proto_path.parent
        while True:
            if all((candidate / imp).exists() for imp in imports):
                return str(candidate)
            if candidate == candidate.parent:
                break
            candidate = candidate.parent
        raise DescriptorError(f"Could not resolve the imports of '{proto_file}': {imports}")

    def compile_descriptor_set(self) -> descriptor_pb2.FileDescriptorSet:
        if not self.proto_file:
            raise DescriptorError("A .proto file is required")
        proto_file = Path(self.proto_file).resolve()
        if not proto_file.is_file():
            raise DescriptorError(f"Proto file '{self.proto_file}' does not exist")

        proto_root = str(Path(self.proto_path).resolve()) if self.proto_path else self.find_proto_root(proto_file)
        google_proto_path = str(importlib.resources.files("grpc_tools").joinpath("_proto"))

        with tempfile.TemporaryDirectory() as output_dir:
            descriptor_file = os.path.join(output_dir, "descriptor_set.pb")
            result = protoc.main([
                "",
                f"-I{proto_root}",
                f"-I{google_proto_path}",
                f"--descriptor_set_out={descriptor_file}",
                "--include_imports",
                str(proto_file),
            ])
            if result != 0:
                raise DescriptorError(f"protoc failed to compile '{self.proto_file}' (exit code {result})")

            with open(descriptor_file, "rb") as f:
                return descriptor_pb2.FileDescriptorSet.FromString(f.read())

    def get_catalog(self) -> SchemaCatalog:
        if self._catalog is not None:
            return self._catalog

        descriptor_set = self.compile_descriptor_set()
        pool = descriptor_pool.DescriptorPool()
        names = []
        # --include_imports writes dependencies before their dependents
        for fd_proto in descriptor_set.file:
            try:
                pool.AddSerializedFile(fd_proto.SerializeToString())
            except (TypeError, ValueError, KeyError) as e:
                self.log(function_name='get_catalog', args=[fd_proto.name], exception=e)
                raise DescriptorError(f"Could not load '{fd_proto.name}': {e}") from e
            names.append(fd_proto.name)

        self._catalog = SchemaCatalog.from_pool(pool, names)
        self.log(function_name='get_catalog', args=[self.proto_file], output=self._catalog.service_names())
        return self._catalog
