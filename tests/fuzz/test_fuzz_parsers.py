import json
import random
import string

from kiln.PARSERS.dockerfile_parser import DockerfileParser
from kiln.PARSERS.env_parser import EnvParser
from kiln.PROTOCOL.message_reader import MessageReader, parse_line

random.seed(1337)


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def random_bytes(length):
    return bytes(random.getrandbits(8) for _ in range(length))


def test_fuzz_dockerfile_parser():
    parser = DockerfileParser()
    for _ in range(100):
        content = random_string(random.randint(0, 1000))
        for inst in parser.parse_from_string(content):
            assert inst.instruction.isupper()
            assert all(isinstance(arg, str) for arg in inst.arguments)


def test_fuzz_dockerfile_exec_form():
    parser = DockerfileParser()
    for _ in range(100):
        payload = json.dumps([random_string(random.randint(0, 10)), random.randint(0, 9)])
        inst, = parser.parse_from_string(f"CMD {payload}")
        assert inst.arguments == [payload]


def test_fuzz_env_parser():
    for _ in range(100):
        content = random_string(random.randint(0, 1000))
        env = EnvParser.parse_from_string(content)
        assert all(key and '=' not in key for key in env)
        entries = EnvParser.parse_env_output(content)
        assert ''.join(entries).count('=') <= content.count('=')


def test_fuzz_message_lines():
    # Garbage from the daemon must surface as ValueError, never as anything else
    for _ in range(200):
        line = random_bytes(random.randint(1, 200))
        try:
            parse_line(line)
        except ValueError:
            pass


def test_fuzz_message_reader():
    for _ in range(50):
        reader = MessageReader()
        reader.feed([random_bytes(random.randint(0, 500))])
        try:
            while reader.next() is not None:
                pass
        except ValueError:
            pass
