"""
Parsers for environment variables: .env files, ``env`` command output and
``KEY=VALUE`` lists as used by the Docker API.
"""
from typing import Dict, Iterable, List


class EnvParser:
    """
    Parser for environment definitions.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of environment variables.
        """
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses .env content. Handles quotes, comments and ``export`` prefixes.
        """
        env = {}
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            if line.startswith('export '):
                line = line[len('export '):]

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip()
            if not key:
                continue

            if value[:1] in ('"', "'"):
                quote = value[0]
                end = value.find(quote, 1)
                if end != -1:
                    value = value[1:end]
            elif '#' in value:
                value = value.split('#')[0].strip()

            env[key] = value
        return env

    @staticmethod
    def parse_env_output(content: str) -> List[str]:
        """
        Parses the output of ``env`` into ``KEY=VALUE`` entries. Lines without ``=`` are
        continuations of a multi-line value.
        """
        entries: List[str] = []
        for line in content.splitlines():
            if '=' in line and not line.startswith((' ', '\t')) and line.split('=', 1)[0].strip():
                entries.append(line)
            elif entries:
                entries[-1] += "\n" + line
        return entries

    @staticmethod
    def to_map(entries: Iterable[str]) -> Dict[str, str]:
        result = {}
        for entry in entries:
            key, _, value = entry.partition('=')
            result[key] = value
        return result

    @staticmethod
    def to_list(env: Dict[str, str]) -> List[str]:
        return [f"{key}={value}" for key, value in env.items()]

    @staticmethod
    def merge(base: Iterable[str], overrides: Iterable[str]) -> List[str]:
        """``KEY=VALUE`` lists merged by key; later entries win, first-seen order kept."""
        merged = EnvParser.to_map(base)
        merged.update(EnvParser.to_map(overrides))
        return EnvParser.to_list(merged)
