from __future__ import annotations

import pytest

from matrixci.dsl import job, matrix, on_push, sh, uses, wf
from matrixci.errors import ConfigurationError
from matrixci.matrix import apply_includes, expand_job, expand_pipeline, interpolate
from matrixci.model import Include, frozen_map


def _test_job():
    # the three-platform build/test job
    m = (
        matrix(build=["linux", "macos", "windows"])
        .include(build="linux", os="ubuntu-latest", rust="1.51.0")
        .include(build="macos", os="macos-latest", rust="1.51.0")
        .include(build="windows", os="windows-latest", rust="1.51.0")
    )
    return job(
        "test",
        uses("actions/checkout@v2"),
        sh("Build", "cargo build\ncargo bench --no-run"),
        sh("Run tests", "cargo test --all-features", timeout_minutes=40),
        name="Test",
        runs_on="${{ matrix.os }}",
        matrix=m,
    )


def test_matrix_expands_to_one_instance_per_combination():
    instances = expand_job(_test_job())
    assert [i.id for i in instances] == ["test (linux)", "test (macos)", "test (windows)"]
    assert [i.runs_on for i in instances] == ["ubuntu-latest", "macos-latest", "windows-latest"]
    assert instances[0].bindings == {"build": "linux", "os": "ubuntu-latest", "rust": "1.51.0"}
    assert instances[0].name == "Test (linux, ubuntu-latest, 1.51.0)"


def test_product_order_first_axis_outermost():
    j = job("t", sh("x", "true"), matrix=matrix(os=["a", "b"], py=["1", "2", "3"]))
    combos = [(i.bindings["os"], i.bindings["py"]) for i in expand_job(j)]
    assert combos == [("a", "1"), ("a", "2"), ("a", "3"), ("b", "1"), ("b", "2"), ("b", "3")]


def test_expansion_is_deterministic():
    j = _test_job()
    first = [(i.id, dict(i.bindings), i.steps) for i in expand_job(j)]
    second = [(i.id, dict(i.bindings), i.steps) for i in expand_job(j)]
    assert first == second


def test_non_matrix_job_yields_single_instance():
    instances = expand_job(job("rustfmt", sh("fmt", "cargo fmt --all -- --check"), name="Rustfmt"))
    assert len(instances) == 1
    assert instances[0].id == "rustfmt"
    assert instances[0].name == "Rustfmt"
    assert dict(instances[0].bindings) == {}


def test_include_with_undeclared_value_is_configuration_error():
    j = job("t", sh("x", "true"), matrix=matrix(build=["linux"]).include(build="freebsd", os="x"))
    with pytest.raises(ConfigurationError) as exc:
        expand_job(j)
    assert exc.value.details["value"] == "freebsd"


def test_include_without_axis_key_is_configuration_error():
    j = job("t", sh("x", "true"), matrix=matrix(build=["linux"]).include(os="ubuntu-latest"))
    with pytest.raises(ConfigurationError):
        expand_job(j)


def test_last_overlay_wins():
    base = frozen_map({"build": "linux"})
    overlays = (
        Include(match=frozen_map({"build": "linux"}), extras=frozen_map({"rust": "1.50", "os": "u"})),
        Include(match=frozen_map({"build": "linux"}), extras=frozen_map({"rust": "1.51"})),
    )
    merged = apply_includes(base, overlays)
    assert dict(merged) == {"build": "linux", "rust": "1.51", "os": "u"}
    # input untouched
    assert dict(base) == {"build": "linux"}


def test_overlay_matches_on_every_bound_axis():
    m = matrix(os=["a", "b"], py=["1", "2"]).include(os="a", py="2", extra="yes")
    instances = expand_job(job("t", sh("x", "true"), matrix=m))
    tagged = [i.id for i in instances if i.bindings.get("extra") == "yes"]
    assert tagged == ["t (a, 2)"]


def test_interpolation_in_steps_and_env():
    j = job(
        "t",
        sh("Test on ${{ matrix.os }}", "echo ${{matrix.os}}"),
        matrix=matrix(os=["a"]),
        env={"TARGET": "${{ matrix.os }}"},
    )
    inst = expand_job(j)[0]
    assert inst.steps[0].name == "Test on a"
    assert inst.steps[0].run == "echo a"
    assert inst.env["TARGET"] == "a"


def test_unbound_expression_is_configuration_error():
    with pytest.raises(ConfigurationError):
        interpolate("${{ matrix.nope }}", frozen_map({"os": "a"}), job_id="t")


def test_other_expression_contexts_are_left_alone():
    assert interpolate("${{ secrets.TOKEN }}", frozen_map(), job_id="t") == "${{ secrets.TOKEN }}"


def test_instance_bindings_are_isolated():
    a, b = expand_job(job("t", sh("x", "true"), matrix=matrix(os=["a", "b"])))
    with pytest.raises(TypeError):
        a.bindings["os"] = "changed"
    a.result.log.append("entry")
    assert b.result.log == []
    assert b.bindings["os"] == "b"


def test_expand_pipeline_layers_workflow_env():
    spec = wf(
        "ci",
        job("a", sh("x", "true"), env={"B": "job"}),
        job("b", sh("y", "true")),
        on=[on_push("master")],
        env={"A": "wf", "B": "wf"},
    )
    a, b = expand_pipeline(spec)
    assert dict(a.env) == {"A": "wf", "B": "job"}
    assert dict(b.env) == {"A": "wf", "B": "wf"}
