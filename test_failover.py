import unittest

from extsock.errors import NotFound, RetryExceeded
from extsock.failover import GatewayFailoverManager


class TestGatewayFailover(unittest.TestCase):
    def setUp(self):
        self.manager = GatewayFailoverManager(default_max_retries=5)
        self.manager.register("segw", ["10.0.0.1", "10.0.0.2", "10.0.0.3"])

    def test_rotation_wraps_around(self):
        self.assertEqual(self.manager.current_address("segw"), "10.0.0.1")
        self.assertEqual(self.manager.on_failure("segw"), "10.0.0.2")
        self.assertEqual(self.manager.on_failure("segw"), "10.0.0.3")
        self.assertEqual(self.manager.on_failure("segw"), "10.0.0.1")
        self.assertEqual(self.manager.status("segw").failure_count, 3)

    def test_every_address_reached_within_n_minus_one_failures(self):
        addrs = ["10.0.1.%d" % i for i in range(1, 6)]
        self.manager.register("ring", addrs, max_retries=10)
        seen = {self.manager.current_address("ring")}
        for _ in range(len(addrs) - 1):
            seen.add(self.manager.on_failure("ring"))
        self.assertEqual(seen, set(addrs))

    def test_single_address_never_rotates(self):
        self.manager.register("solo", ["10.9.9.9"])
        for _ in range(3):
            with self.assertRaises(RetryExceeded) as ctx:
                self.manager.on_failure("solo")
            self.assertEqual(ctx.exception.address, "10.9.9.9")
        status = self.manager.status("solo")
        self.assertEqual(status.current_index, 0)
        self.assertEqual(status.failure_count, 0)

    def test_ceiling(self):
        self.manager.register("edge", ["10.0.0.1", "10.0.0.2"], max_retries=2)
        self.manager.on_failure("edge")
        self.manager.on_failure("edge")
        before = self.manager.status("edge")
        with self.assertRaises(RetryExceeded) as ctx:
            self.manager.on_failure("edge")
        self.assertEqual(ctx.exception.code, "retry-exceeded")
        after = self.manager.status("edge")
        self.assertTrue(after.exhausted)
        self.assertEqual(after.current_index, before.current_index)
        self.assertEqual(after.failure_count, 2)

    def test_zero_retries_means_no_rotation(self):
        self.manager.register("fixed", ["10.0.0.1", "10.0.0.2"], max_retries=0)
        with self.assertRaises(RetryExceeded):
            self.manager.on_failure("fixed")
        self.assertEqual(self.manager.current_address("fixed"), "10.0.0.1")

    def test_success_clears_count_but_keeps_gateway(self):
        self.manager.on_failure("segw")
        self.manager.on_failure("segw")
        self.manager.on_success("segw")
        status = self.manager.status("segw")
        self.assertEqual(status.failure_count, 0)
        self.assertEqual(status.current_address, "10.0.0.3")

    def test_reset_revives_exhausted_connection(self):
        self.manager.register("edge", ["10.0.0.1", "10.0.0.2"], max_retries=1)
        self.manager.on_failure("edge")
        with self.assertRaises(RetryExceeded):
            self.manager.on_failure("edge")
        self.manager.reset("edge")
        self.assertFalse(self.manager.status("edge").exhausted)
        self.assertEqual(self.manager.on_failure("edge"), "10.0.0.1")

    def test_reregister_starts_over(self):
        self.manager.on_failure("segw")
        self.manager.register("segw", ["10.0.0.3", "10.0.0.1"])
        status = self.manager.status("segw")
        self.assertEqual(status.current_index, 0)
        self.assertEqual(status.current_address, "10.0.0.3")
        self.assertEqual(status.failure_count, 0)

    def test_unknown_name(self):
        with self.assertRaises(NotFound):
            self.manager.on_failure("ghost")
        with self.assertRaises(NotFound):
            self.manager.on_success("ghost")
        self.assertFalse(self.manager.unregister("ghost"))

    def test_unregister(self):
        self.assertIn("segw", self.manager)
        self.assertTrue(self.manager.unregister("segw"))
        self.assertNotIn("segw", self.manager)
        self.assertEqual(self.manager.names(), [])

    def test_empty_address_list(self):
        with self.assertRaises(ValueError):
            self.manager.register("empty", [])


if __name__ == '__main__':
    unittest.main()
