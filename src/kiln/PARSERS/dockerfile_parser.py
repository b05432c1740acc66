"""
Parsers for Dockerfiles, extracting instructions and the base image reference.
"""
import json
import re
from typing import List, Optional
from ..MODELS.dockerfile_ast import Instruction


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses Dockerfile content. Instruction keywords are case-insensitive and
        returned upper-cased; continuation lines are joined.
        """
        instructions = []

        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)
        content = re.sub(r'\\\s*\n', ' ', content)

        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            args_str = match.group(2).strip()

            # exec form
            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = json.loads(args_str)
                except json.JSONDecodeError:
                    args = [args_str]
                if not all(isinstance(arg, str) for arg in args):
                    args = [args_str]
            else:
                args = args_str.split()

            instructions.append(Instruction(
                instruction=inst,
                arguments=args,
                raw=match.group(0).strip()
            ))

        return instructions

    def base_image(self, content: str) -> Optional[str]:
        """
        Reference named by the first FROM instruction, skipping flags such as ``--platform``.
        """
        for inst in self.parse_from_string(content):
            if inst.instruction != "FROM":
                continue
            for arg in inst.arguments:
                if not arg.startswith("--"):
                    return arg
        return None

    def parse_from(self, dockerfile_path: str) -> str:
        """
        Reads the base image reference of a Dockerfile.

        :param dockerfile_path: Path to the Dockerfile.
        :return: The FROM reference.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        reference = self.base_image(content)
        if not reference:
            raise ValueError(f"could not parse provided Dockerfile from {dockerfile_path}")
        return reference

    def is_valid(self, dockerfile_path: str) -> bool:
        with open(dockerfile_path, 'r') as f:
            return self.base_image(f.read()) is not None
