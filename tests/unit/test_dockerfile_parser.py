import pytest

from kiln.PARSERS.dockerfile_parser import DockerfileParser

def test_parse_from_string():
    content = """
    FROM python:3.9-slim
    WORKDIR /app
    COPY . .
    RUN pip install -r requirements.txt \
        && echo "done"
    ENV PORT=8080
    CMD ["python", "app.py"]
    """
    parser = DockerfileParser()
    instructions = parser.parse_from_string(content)

    inst_names = [i.instruction for i in instructions]
    assert "FROM" in inst_names
    assert "WORKDIR" in inst_names
    assert "RUN" in inst_names
    assert "CMD" in inst_names

    # Check CMD parsing (exec form)
    cmd_inst = next(i for i in instructions if i.instruction == "CMD")
    assert cmd_inst.arguments == ["python", "app.py"]

    # Check RUN with line continuation
    run_inst = next(i for i in instructions if i.instruction == "RUN")
    assert "&& echo \"done\"" in " ".join(run_inst.arguments)

def test_keywords_case_insensitive():
    instructions = DockerfileParser().parse_from_string("from alpine\nrun echo hi\n")
    assert [i.instruction for i in instructions] == ["FROM", "RUN"]

def test_parse_from_skips_platform_flag(tmp_path):
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text("# base\nFROM --platform=linux/amd64 golang:1.22 AS build\nRUN go build\n")
    assert DockerfileParser().parse_from(str(dockerfile)) == "golang:1.22"
    assert DockerfileParser().is_valid(str(dockerfile))

def test_parse_from_without_from(tmp_path):
    dockerfile = tmp_path / "Dockerfile"
    dockerfile.write_text("RUN echo nothing\n")
    assert not DockerfileParser().is_valid(str(dockerfile))
    with pytest.raises(ValueError):
        DockerfileParser().parse_from(str(dockerfile))
