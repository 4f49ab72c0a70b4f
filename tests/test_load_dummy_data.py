"""
Tests for the API data loader, with HTTP calls mocked out.
"""

import io
import unittest
from contextlib import redirect_stdout
from unittest.mock import Mock, patch

import requests

from load_dummy_data import PREDEFINED_DATA, DataLoader, main


def response(status_code, body):
    return Mock(status_code=status_code, json=Mock(return_value=body), text=str(body))


class FakeApi:
    """Answers POSTs the way the mission API does"""

    def __init__(self):
        self.requests = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.requests.append((url, json))
        if url.endswith("/api/fleet/drones"):
            return response(201, {"id": f"DRN-{len(self.requests)}"})
        if url.endswith("/control"):
            return response(200, {"success": True, "status": "in-progress", "action": "start"})
        if url.endswith("/api/missions"):
            if json["mission_type"] == "crosshatch":
                return response(400, {"detail": "Survey area needs coordinates or bounds"})
            return response(201, {"id": f"MSN-{len(self.requests)}", "total_waypoints": 45})
        return response(404, {"detail": "Not Found"})


class TestDataLoader(unittest.TestCase):
    """Test loading drones and missions through the API."""

    def setUp(self):
        self.api = FakeApi()
        patcher = patch('load_dummy_data.requests.post', side_effect=self.api.post)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.loader = DataLoader("http://api")

    def load(self, start=False):
        with redirect_stdout(io.StringIO()):
            self.loader.load_all(PREDEFINED_DATA, start=start)

    def test_load_all(self):
        self.load()

        self.assertEqual(self.loader.stats['drones'], {'success': 3, 'failed': 0})
        self.assertEqual(self.loader.stats['missions'], {'success': 2, 'failed': 1})
        self.assertEqual(len(self.loader.mission_ids), 2)

    def test_missions_reference_loaded_drones(self):
        self.load()

        mission_payloads = [body for url, body in self.api.requests if url.endswith("/api/missions")]
        self.assertEqual([p['drone_id'] for p in mission_payloads], self.loader.drone_ids)
        self.assertNotIn('drone', mission_payloads[0])

    def test_start_missions(self):
        self.load(start=True)

        control_calls = [body for url, body in self.api.requests if url.endswith("/control")]
        self.assertEqual(control_calls, [{"action": "start"}] * 2)
        self.assertEqual(self.loader.stats['started']['success'], 2)

    def test_connection_error_is_counted(self):
        with patch('load_dummy_data.requests.post', side_effect=requests.ConnectionError("refused")):
            with redirect_stdout(io.StringIO()):
                self.loader.load_drones(PREDEFINED_DATA['drones'][:1])

        self.assertEqual(self.loader.stats['drones'], {'success': 0, 'failed': 1})
        self.assertEqual(self.loader.drone_ids, [None])


class TestMain(unittest.TestCase):
    """Test the entry point."""

    @patch('load_dummy_data.requests.get', side_effect=requests.ConnectionError("refused"))
    def test_server_down(self, _get):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main([]), 1)

    @patch('load_dummy_data.requests.get', return_value=Mock(status_code=200))
    def test_missing_file(self, _get):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(main(['/nonexistent/data.json']), 1)


if __name__ == '__main__':
    unittest.main()
