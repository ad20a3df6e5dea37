import asyncio

from flowsheet.dependencies import edges_to_dot
from flowsheet.logging_config import setup_logging
from flowsheet.notebook import Notebook


async def demo_notebook():
    print("=== Demo: FlowSheet Reactive Notebook ===")
    setup_logging()
    nb = Notebook()
    nb.context.start()

    # 1. Inputs: a formula and a measurement table
    radius = nb.add_block("formula", "2.5", variable_name="r")
    nb.add_block("table", [["1.0", "2.0"], ["3.0", "4.0"]], variable_name="m")
    area = nb.add_block("formula", "pi * r^2", variable_name="area")
    det = nb.add_block("formula", "det(m)", variable_name="d")
    nb.add_block("text", "The radius r is measured in metres.")

    print("\n[Step 1] Formula results:")
    print(f"area = {nb.display(area.id)}")
    print(f"det(m) = {nb.display(det.id)}")

    # 2. Edit the input and propagate
    nb.update_block(radius.id, content="4")
    print(f"\n[Step 2] After r = 4, stale area in scope: {nb.context.scope.get('area'):.4f}")
    passes = nb.settle()
    print(f"Settled in {passes} pass(es): area = {nb.context.scope.get('area'):.4f}")

    # 3. Scripts share the same scope
    states = await nb.context.bridge.wait_settled()
    print("\n[Step 3] Runtimes:", {kind: state.value for kind, state in states.items()})
    script = nb.add_block("script", "circumference = 2 * math.pi * r\nprint(f'C = {circumference:.3f}')")
    print(await nb.run_script(script.id))
    ratio = nb.add_block("formula", "circumference / r", variable_name="ratio")
    print(f"ratio = {nb.display(ratio.id)}")

    if nb.context.statistical_ready:
        r_script = nb.add_block("script", "summary(c(r, area))", language="r")
        print(await nb.run_script(r_script.id))
    else:
        print("R is not available, skipping the statistical script.")

    # 4. Dependency overlay
    edges = nb.dependency_edges()
    print(f"\n[Step 4] {len(edges)} dependency edges:")
    for edge in edges:
        print(f"  {nb.block(edge.producer_id).variable_name} -> {nb.block(edge.consumer_id).variable_name}")
    print(edges_to_dot(nb.blocks, edges))

    print("\nVariables:")
    for name, kind, value in nb.variables():
        print(f"  {name:<15} {kind:<12} {value}")

    await nb.context.close()


if __name__ == "__main__":
    asyncio.run(demo_notebook())
