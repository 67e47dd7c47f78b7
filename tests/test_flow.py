import unittest
import sys
import warnings
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from actiongraph import Node, Flow, FlowWarning, NoRootNodeError, ActionGraphError


class VisitNode(Node):
    """Logs its name and the params it saw into shared['visits'], returns a fixed action."""
    def __init__(self, name, action=None, defaults=None):
        super().__init__()
        self.name = name
        self.action = action
        if defaults:
            self.set_parameters(defaults)

    def execute(self, params):
        return self.action

    def finalize(self, shared, prepared, result):
        shared.setdefault("visits", []).append(self.name)
        shared.setdefault("seen", []).append(dict(prepared))


class ValidateNode(Node):
    def __init__(self):
        super().__init__(max_retries=1)
        self.name = "Validate"

    def execute(self, params):
        if "@" in params.get("email", "") and params.get("name"):
            return "valid"
        return "invalid"

    def finalize(self, shared, prepared, result):
        shared["visits"].append(self.name)


class CountdownNode(Node):
    def prepare(self, shared):
        shared["count"] -= 1

    def execute(self, params):
        return "again"

    def finalize(self, shared, prepared, result):
        shared["visits"].append(shared["count"])


class TestFlowBasics(unittest.TestCase):
    def test_no_root_raises(self):
        with self.assertRaises(NoRootNodeError):
            Flow().run({})

    def test_no_root_is_library_error(self):
        with self.assertRaises(ActionGraphError):
            Flow().run({})

    def test_set_root_returns_node(self):
        flow, node = Flow(), Node()
        self.assertIs(flow.set_root(node), node)
        self.assertIs(flow.root_node, node)

    def test_two_hop_flow_visits_both_with_params(self):
        a = VisitNode("A", defaults={"a_default": True})
        b = VisitNode("B")
        a >> b
        flow = Flow(root=a)
        flow.set_parameters({"x": 1})
        shared = {}
        flow.run(shared)

        self.assertEqual(shared["visits"], ["A", "B"])
        self.assertEqual(shared["seen"][0], {"x": 1, "a_default": True})
        self.assertEqual(shared["seen"][1]["x"], 1)

    def test_incoming_params_win_over_node_defaults(self):
        a = VisitNode("A", defaults={"x": "node", "only_node": 1})
        flow = Flow(root=a)
        flow.set_parameters({"x": "flow"})
        shared = {}
        flow.run(shared)
        self.assertEqual(shared["seen"][0], {"x": "flow", "only_node": 1})

    def test_run_returns_last_action(self):
        a = VisitNode("A")
        b = VisitNode("B", action="finished")
        a >> b
        self.assertEqual(Flow(root=a).run({}), "finished")

    def test_empty_string_action_follows_default(self):
        a = VisitNode("A", action="")
        b = VisitNode("B")
        a >> b
        shared = {}
        Flow(root=a).run(shared)
        self.assertEqual(shared["visits"], ["A", "B"])

    def test_graph_nodes_are_not_mutated(self):
        a = VisitNode("A")
        b = VisitNode("B", defaults={"b": 1})
        a >> b
        flow = Flow(root=a)
        flow.set_parameters({"x": 1})
        flow.run({})
        self.assertEqual(a.parameters, {})
        self.assertEqual(b.parameters, {"b": 1})

    def test_flow_prepare_result_replaces_own_params(self):
        class PreparedFlow(Flow):
            def prepare(self, shared):
                return {"from_prepare": shared["value"]}

            def finalize(self, shared, prepared, result):
                shared["flow_prepared"] = prepared
                shared["flow_result"] = result

        a = VisitNode("A", action="end")
        flow = PreparedFlow(root=a)
        flow.set_parameters({"ignored": True})
        shared = {"value": 5}
        self.assertEqual(flow.run(shared), "end")
        self.assertEqual(shared["seen"][0], {"from_prepare": 5})
        self.assertEqual(shared["flow_prepared"], {"from_prepare": 5})
        self.assertEqual(shared["flow_result"], "end")

    def test_flow_execute_is_never_called(self):
        class LoudFlow(Flow):
            def execute(self, params):
                raise AssertionError("Flow.execute must not be called")

        LoudFlow(root=VisitNode("A")).run({})


class TestRouting(unittest.TestCase):
    def run_validation(self, params):
        validate, process, error = ValidateNode(), VisitNode("Process"), VisitNode("Error")
        validate - "valid" >> process
        validate - "invalid" >> error
        flow = Flow(root=validate)
        flow.set_parameters(params)
        shared = {"visits": []}
        flow.run(shared)
        return shared["visits"]

    def test_valid_input_routes_to_process(self):
        self.assertEqual(self.run_validation({"email": "a@b.com", "name": "X"}), ["Validate", "Process"])

    def test_empty_input_routes_to_error(self):
        self.assertEqual(self.run_validation({}), ["Validate", "Error"])

    def test_unmatched_action_warns_when_successors_exist(self):
        a = VisitNode("A", action="typo")
        a - "real" >> VisitNode("B")
        shared = {}
        with self.assertWarns(FlowWarning) as ctx:
            result = Flow(root=a).run(shared)
        self.assertEqual(shared["visits"], ["A"])
        self.assertEqual(result, "typo")
        self.assertIn("'typo' not found in ['real']", str(ctx.warning))

    def test_end_of_graph_is_silent(self):
        a = VisitNode("A", action="anything")
        with warnings.catch_warnings():
            warnings.simplefilter("error", FlowWarning)
            self.assertEqual(Flow(root=a).run({}), "anything")

    def test_unhashable_result_ends_flow(self):
        a = VisitNode("A", action=["not", "a", "label"])
        a >> VisitNode("B")
        shared = {}
        with self.assertWarns(FlowWarning):
            Flow(root=a).run(shared)
        self.assertEqual(shared["visits"], ["A"])

    def test_get_next_node_normalizes_none(self):
        a, b = Node(), Node()
        a >> b
        self.assertIs(Flow().get_next_node(a, None), b)

    def test_cycle_runs_until_unmatched_action(self):
        class Stop(Node):
            def prepare(self, shared):
                shared["visits"].append("stop")

        class Decide(Node):
            def prepare(self, shared):
                return shared["count"]

            def execute(self, count):
                return "again" if count > 0 else "stop"

        decide, tick, stop = Decide(), CountdownNode(), Stop()
        decide - "again" >> tick
        decide - "stop" >> stop
        tick - "again" >> decide
        shared = {"count": 3, "visits": []}
        Flow(root=decide).run(shared)
        self.assertEqual(shared["visits"], [2, 1, 0, "stop"])


class TestMergedBaseline(unittest.TestCase):
    """Parameters carried to the next hop are the merged set, not the execute result."""

    def test_defaults_of_earlier_hops_reach_later_hops(self):
        a = VisitNode("A", action="go", defaults={"from_a": 1})
        b = VisitNode("B", action="go", defaults={"from_b": 2})
        c = VisitNode("C")
        a - "go" >> b
        b - "go" >> c
        shared = {}
        Flow(root=a).run(shared)
        self.assertEqual(shared["seen"][2], {"from_a": 1, "from_b": 2})

    def test_execute_result_is_not_forwarded_as_params(self):
        class Producer(Node):
            def execute(self, params):
                return "produced"

        a = Producer()
        a - "produced" >> VisitNode("B")
        shared = {}
        flow = Flow(root=a)
        flow.set_parameters({"x": 1})
        flow.run(shared)
        self.assertEqual(shared["seen"], [{"x": 1}])

    def test_mutating_own_params_does_not_reach_next_hop(self):
        class Mutator(Node):
            def execute(self, params):
                self.parameters["leaked"] = True
                params["also_leaked"] = True

        a = Mutator()
        a >> VisitNode("B")
        shared = {}
        Flow(root=a).run(shared)
        self.assertEqual(shared["seen"][0], {})


class TestNestedFlow(unittest.TestCase):
    def test_inner_flow_routes_parent_with_last_action(self):
        inner_a = VisitNode("InnerA")
        inner_b = VisitNode("InnerB", action="inner_done")
        inner_a >> inner_b
        inner = Flow(root=inner_a)
        after = VisitNode("After")
        inner - "inner_done" >> after

        shared = {}
        outer = Flow(root=inner)
        outer.set_parameters({"x": 1})
        outer.run(shared)
        self.assertEqual(shared["visits"], ["InnerA", "InnerB", "After"])
        self.assertTrue(all(seen["x"] == 1 for seen in shared["seen"]))

    def test_inner_flow_params_merge_onto_its_own(self):
        leaf = VisitNode("Leaf")
        inner = Flow(root=leaf)
        inner.set_parameters({"inner_default": "yes", "x": "inner"})
        outer = Flow(root=inner)
        outer.set_parameters({"x": "outer"})
        shared = {}
        outer.run(shared)
        self.assertEqual(shared["seen"][0], {"inner_default": "yes", "x": "outer"})


if __name__ == '__main__':
    unittest.main()
