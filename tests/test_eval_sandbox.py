import json
import time

from mirrorflow_proxy.utils.eval_sandbox import EvalChainExecutor, build_prelude, select_eval_scripts

from packer_helpers import pack


def nested_eval(leaf: str, depth: int) -> list:
    """Scripts of an eval chain, outermost first, ending with ``leaf``."""
    layers = [leaf]
    for _ in range(depth):
        layers.insert(0, f"eval({json.dumps(layers[0])})")
    return layers


def test_literal_eval_is_captured_not_executed():
    result = EvalChainExecutor(max_depth=3).run(['eval("var a = 1; throw new Error(\'never\')")'])
    assert result.captured == ["var a = 1; throw new Error('never')"]
    assert len(result.stages) == 1
    assert result.stages[0].error is None
    assert result.stages[0].captured_count == 1


def test_chain_within_depth_bound_is_fully_captured():
    leaf = "var source='https://cdn.example/hls/master.m3u8';"
    layers = nested_eval(leaf, 3)

    result = EvalChainExecutor(max_depth=3).run([layers[0]])

    assert result.captured == layers[1:]
    assert result.captured[-1] == leaf
    assert [stage.depth for stage in result.stages] == [0, 1, 2]


def test_chain_beyond_depth_bound_is_truncated():
    layers = nested_eval("var deepest = true;", 5)

    result = EvalChainExecutor(max_depth=3).run([layers[0]])

    assert result.captured == layers[1:4]
    assert "var deepest = true;" not in result.captured
    assert len(result.stages) == 3


def test_self_referential_chain_runs_once():
    script = '(function f(){eval("(" + f.toString() + ")()");})()'

    result = EvalChainExecutor(max_depth=5).run([script])

    assert len(result.stages) == 1
    # the captured text is the script itself, which has already run
    assert result.captured == [script]


def test_max_stages_bounds_the_walk():
    scripts = [f'eval("var n = {i};")' for i in range(10)]
    result = EvalChainExecutor(max_depth=3, max_stages=4).run(scripts)
    assert len(result.stages) == 4
    assert len(result.captured) == 4


def test_infinite_loop_is_stopped_by_time_budget():
    started = time.monotonic()
    result = EvalChainExecutor(max_depth=3, time_budget=0.5).run(["while (true) {}", 'eval("after")'])

    assert time.monotonic() - started < 10
    assert "timeout" in result.stages[0].error
    assert result.captured == ["after"]


def test_stage_error_does_not_abort_chain():
    result = EvalChainExecutor(max_depth=3).run(["throw new Error('boom')", "eval('ok')"])

    assert len(result.stages) == 2
    assert "boom" in result.stages[0].error
    assert result.captured == ["ok"]


def test_packed_script_is_decoded_by_sandbox():
    source = "var source='https://cdn.example/hls/master.m3u8';"
    result = EvalChainExecutor(max_depth=3).run([pack(source)])
    assert result.captured == [source]


def test_host_shims():
    script = """
    document.querySelector('video').click();
    localStorage.setItem('k', navigator.userAgent);
    setTimeout(function () { throw new Error('timers never fire'); }, 0);
    console.log('host', location.hostname);
    window.eval(atob(btoa('hello')));
    """
    result = EvalChainExecutor(max_depth=3, page_url="https://kwik.si/e/abc").run([script])

    assert result.stages[0].error is None
    assert result.captured == ["hello"]
    assert result.stages[0].logs_snippet == "host kwik.si"


def test_function_constructor_body_is_captured():
    result = EvalChainExecutor(max_depth=3).run(["var f = new Function('a', 'return a * 2'); console.log(f(21));"])

    assert result.captured == ["return a * 2"]
    assert result.stages[0].logs_snippet == "42"


def test_combined_output_joins_captures():
    result = EvalChainExecutor(max_depth=3).run(["eval('one'); eval('two');"])
    assert result.combined_output == "one\ntwo"


def test_select_eval_scripts():
    scripts = ["eval(x)", "var source = 'a';", "console.log(1)", "", "evaluate(x)"]
    assert select_eval_scripts(scripts) == ["eval(x)", "var source = 'a';"]


def test_build_prelude_fills_location():
    prelude = build_prelude("https://kwik.si/e/abc?x=1")
    assert '"hostname": "kwik.si"' in prelude
    assert '"search": "?x=1"' in prelude
    assert "__MF_LOCATION__" not in prelude


def test_allocation_bomb_is_stopped_by_heap_limit():
    bomb = "var a = []; while (true) { a.push(new Array(1e6).fill(1.5)); }"

    result = EvalChainExecutor(max_depth=3, time_budget=5.0, max_memory=64 * 1024 * 1024).run(
        [bomb, "eval('after')"]
    )

    assert "out of memory" in result.stages[0].error
    assert result.captured == ["after"]
