"""Prove and fuzz a cross-contract ``add`` property programmatically."""
from pathlib import Path

from wasm_sym.engine.host import HOST_FUNCTIONS, HOST_MODULE
from wasm_sym.engine.session import TestSession
from wasm_sym.proof.store import ProofStore
from wasm_sym.report.generator import ReportGenerator
from wasm_sym.wasm.encoder import ModuleBuilder
from wasm_sym.wasm.parser import ValType

I32, I64 = ValType.I32, ValType.I64


def build_adder() -> bytes:
    """``add`` widens to 64 bits; ``add32`` wraps at 32 bits."""
    builder = ModuleBuilder()
    builder.add_function("add", [I32, I32], [I64], """
        local.get 0
        i64.extend_i32_u
        local.get 1
        i64.extend_i32_u
        i64.add
    """)
    builder.add_function("add32", [I32, I32], [I32], """
        local.get 0
        local.get 1
        i32.add
    """)
    return builder.build()


def build_tests() -> bytes:
    """Deploys the adder in ``init`` and checks both exports against a 64-bit sum."""
    builder = ModuleBuilder()
    for name in ("create_contract", "invoke"):
        signature = HOST_FUNCTIONS[name]
        builder.import_function(HOST_MODULE, name, signature.params, signature.results)
    adder = builder.add_global(I64, 0)
    builder.add_data(0, b"addadd32")
    builder.add_function("init", [I64], [], f"""
        i64.const 0x100
        local.get 0
        call $create_contract
        global.set {adder}
    """)
    builder.add_function("call_adder", [I32, I32, I32, I32], [I64], f"""
        i32.const 16
        local.get 2
        i64.extend_i32_u
        i64.store
        i32.const 24
        local.get 3
        i64.extend_i32_u
        i64.store
        global.get {adder}
        local.get 0
        local.get 1
        i32.const 16
        i32.const 2
        call $invoke
    """, export=False)
    for name, (pointer, length) in (("test_add", (0, 3)), ("test_add32", (3, 5))):
        builder.add_function(name, [I32, I32], [I32], f"""
            i32.const {pointer}
            i32.const {length}
            local.get 0
            local.get 1
            call $call_adder
            local.get 0
            i64.extend_i32_u
            local.get 1
            i64.extend_i32_u
            i64.add
            i64.eq
        """)
    return builder.build()


def main(proof_dir: Path = Path(".wasm-sym/proofs")) -> None:
    session = TestSession.from_bytes(build_tests(), [("adder", build_adder())], name="adder-tests")
    generator = ReportGenerator("adder")

    fuzzed = session.run("fuzz")
    proved = session.run("prove", store=ProofStore(proof_dir))
    print(generator.to_markdown(fuzzed + proved))


if __name__ == "__main__":
    main()
