import unittest

from costlens.domain.context import new_request_context
from costlens.domain.costs import Recommendation, ResourceDescriptor
from costlens.domain.plugins import PluginMetadata
from costlens.engine.costs import NO_PRICING_NOTE, CostQueryEngine, CostQueryError, RecommendationFetchError
from costlens.pluginhost.process import PluginCallError

from fakes import FakeClient


def _meta(name, providers=(), capabilities=("costs", "recommendations")):
    return PluginMetadata(name=name, version="1.0.0", spec_version="1.2.0", providers=tuple(providers), capabilities=capabilities)


RESOURCES = [
    ResourceDescriptor("aws:ec2/instance:Instance", "web-1", "aws"),
    ResourceDescriptor("gcp:compute/instance:Instance", "vm-1", "gcp"),
    ResourceDescriptor("aws:s3/bucket:Bucket", "logs", "aws"),
]


class TestProjectedCosts(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.ctx = new_request_context("cost.projected")

    async def test_one_result_per_resource_in_input_order(self):
        aws = FakeClient("aws-plugin", _meta("aws-plugin", ["aws"]), prices={"web-1": 30.0, "logs": 2.5})
        gcp = FakeClient("gcp-plugin", _meta("gcp-plugin", ["gcp"]), prices={"vm-1": 12.0})
        engine = CostQueryEngine([gcp, aws], timeout_sec=1.0)

        results = await engine.get_projected_costs(self.ctx, RESOURCES)

        self.assertEqual([r.resource_id for r in results], ["web-1", "vm-1", "logs"])
        self.assertEqual([r.amount for r in results], [30.0, 12.0, 2.5])
        self.assertEqual([r.source for r in results], ["aws-plugin", "gcp-plugin", "aws-plugin"])
        self.assertEqual(sorted(aws.seen_resources), ["logs", "web-1"])
        self.assertEqual(gcp.seen_resources, ["vm-1"])

    async def test_first_plugin_by_name_wins(self):
        b = FakeClient("b-plugin", _meta("b-plugin"), prices={"web-1": 99.0})
        a = FakeClient("a-plugin", _meta("a-plugin"), prices={"web-1": 10.0})
        engine = CostQueryEngine([b, a], timeout_sec=1.0)
        results = await engine.get_projected_costs(self.ctx, RESOURCES[:1])
        self.assertEqual(results[0].amount, 10.0)
        self.assertEqual(results[0].source, "a-plugin")

    async def test_unpriced_resources_get_zero_with_note(self):
        client = FakeClient("aws-plugin", _meta("aws-plugin", ["aws"]), prices={"web-1": 30.0})
        engine = CostQueryEngine([client], timeout_sec=1.0)
        results = await engine.get_projected_costs(self.ctx, RESOURCES)
        self.assertEqual(results[1].amount, 0.0)
        self.assertEqual(results[1].currency, "USD")
        self.assertEqual(results[1].notes, NO_PRICING_NOTE)

    async def test_partial_failure_is_tolerated(self):
        bad = FakeClient("a-bad", _meta("a-bad"), costs_error=PluginCallError("a-bad", "get_costs", "internal", "down"))
        good = FakeClient("b-good", _meta("b-good"), prices={"web-1": 5.0})
        engine = CostQueryEngine([bad, good], timeout_sec=1.0)
        results = await engine.get_projected_costs(self.ctx, RESOURCES[:1])
        self.assertEqual(results[0].amount, 5.0)

    async def test_slow_plugin_times_out(self):
        slow = FakeClient("slow", _meta("slow"), prices={"web-1": 1.0}, delay_sec=5.0)
        fast = FakeClient("fast", _meta("fast"), prices={"web-1": 2.0})
        engine = CostQueryEngine([slow, fast], timeout_sec=0.1)
        results = await engine.get_projected_costs(self.ctx, RESOURCES[:1])
        self.assertEqual(results[0].source, "fast")

    async def test_all_failures_raise(self):
        bad = FakeClient("bad", _meta("bad"), costs_error=RuntimeError("down"))
        engine = CostQueryEngine([bad], timeout_sec=1.0)
        with self.assertRaises(CostQueryError):
            await engine.get_projected_costs(self.ctx, RESOURCES)

    async def test_clients_without_costs_capability_are_skipped(self):
        recs_only = FakeClient("recs", _meta("recs", capabilities=("recommendations",)), prices={"web-1": 1.0})
        engine = CostQueryEngine([recs_only], timeout_sec=1.0)
        results = await engine.get_projected_costs(self.ctx, RESOURCES[:1])
        self.assertEqual(recs_only.seen_resources, [])
        self.assertEqual(results[0].notes, NO_PRICING_NOTE)


class TestRecommendationFetch(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.ctx = new_request_context("recommendations.list")

    async def test_collects_from_capable_clients(self):
        rec = Recommendation("r1", "web-1", "rightsize", {"estimated_savings": 3})
        a = FakeClient("a", _meta("a", ["aws"]), recommendations=[rec])
        costs_only = FakeClient(
            "b",
            _meta("b", capabilities=("costs",)),
            recommendations=[Recommendation("r2", "web-1", "x")],
        )
        engine = CostQueryEngine([a, costs_only], timeout_sec=1.0)
        recs = await engine.get_recommendations_for_resources(self.ctx, RESOURCES)
        self.assertEqual(recs, [rec])

    async def test_partial_failure_is_logged(self):
        rec = Recommendation("r1", "web-1", "rightsize")
        bad = FakeClient("bad", _meta("bad"), recommendations_error=RuntimeError("down"))
        good = FakeClient("good", _meta("good"), recommendations=[rec])
        engine = CostQueryEngine([bad, good], timeout_sec=1.0)
        with self.assertLogs("costlens", level="WARNING") as logs:
            recs = await engine.get_recommendations_for_resources(self.ctx, RESOURCES)
        self.assertEqual(recs, [rec])
        self.assertTrue(any("plugin.call.failed" in line for line in logs.output))

    async def test_all_failures_raise(self):
        bad = FakeClient("bad", _meta("bad"), recommendations_error=RuntimeError("down"))
        engine = CostQueryEngine([bad], timeout_sec=1.0)
        with self.assertRaises(RecommendationFetchError):
            await engine.get_recommendations_for_resources(self.ctx, RESOURCES)


if __name__ == "__main__":
    unittest.main()
