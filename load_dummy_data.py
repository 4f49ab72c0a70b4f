#!/usr/bin/env python3
# Quick Data Loader - Seed the Mission Control API
# File: load_dummy_data.py

"""
Load drones and survey missions into a running API server
Usage: python load_dummy_data.py [json_file] [--start]
"""

import json
import sys
import requests
from typing import Dict, Any, List, Optional

# API Configuration
BASE_URL = "http://localhost:8000"
HEADERS = {"Content-Type": "application/json"}
TIMEOUT = 10

# Missions refer to drones by their position in the "drones" list
PREDEFINED_DATA = {
    "drones": [
        {"name": "Surveyor 1", "serial_number": "DJI-M300-0001", "model": "Matrice 300 RTK",
         "battery_level": 95.0, "location": "Hangar A"},
        {"name": "Surveyor 2", "serial_number": "DJI-M300-0002", "model": "Matrice 300 RTK",
         "battery_level": 88.0, "location": "Hangar A"},
        {"name": "Mapper 1", "serial_number": "WINGTRA-0001", "model": "WingtraOne",
         "battery_level": 100.0, "location": "Hangar B"}
    ],
    "missions": [
        {
            "name": "Agricultural Survey Alpha",
            "mission_type": "grid",
            "altitude": 50,
            "overlap_percentage": 70,
            "drone": 0,
            "survey_area_polygon": {
                "coordinates": [
                    {"lat": 37.7749, "lng": -122.4194},
                    {"lat": 37.7759, "lng": -122.4194},
                    {"lat": 37.7759, "lng": -122.4174},
                    {"lat": 37.7749, "lng": -122.4174}
                ]
            }
        },
        {
            "name": "Site Boundary Check",
            "mission_type": "perimeter",
            "altitude": 40,
            "drone": 1,
            "survey_area_polygon": {
                "coordinates": [
                    {"lat": 37.8044, "lng": -122.2712},
                    {"lat": 37.8064, "lng": -122.2712},
                    {"lat": 37.8064, "lng": -122.2682},
                    {"lat": 37.8044, "lng": -122.2682}
                ]
            }
        },
        {
            "name": "Roof Crosshatch",
            "mission_type": "crosshatch",
            "altitude": 30,
            "drone": 2,
            "survey_area_polygon": {
                "bounds": {"minLat": 37.3382, "maxLat": 37.3392, "minLng": -121.8863, "maxLng": -121.8848}
            }
        }
    ]
}

class DataLoader:
    """Load dummy data into the API server"""

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.drone_ids: List[str] = []
        self.mission_ids: List[str] = []
        self.stats = {
            'drones': {'success': 0, 'failed': 0},
            'missions': {'success': 0, 'failed': 0},
            'started': {'success': 0, 'failed': 0}
        }

    def check_server(self) -> bool:
        """Check if API server is running"""
        try:
            response = requests.get(f"{self.base_url}/health", timeout=2)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def load_drones(self, drones: list):
        print(f"\n📡 Loading {len(drones)} drones...")

        for drone in drones:
            result = self._post("/api/fleet/drones", drone, 'drones', drone['name'])
            self.drone_ids.append(result['id'] if result else None)
            if result:
                print(f"   ✓ {drone['name']}: {result['id']}")

    def load_missions(self, missions: list):
        print(f"\n🗺️ Loading {len(missions)} missions...")

        for mission in missions:
            payload = {k: v for k, v in mission.items() if k != 'drone'}
            payload['drone_id'] = self._drone_for(mission.get('drone'))

            result = self._post("/api/missions", payload, 'missions', mission['name'])
            if result:
                self.mission_ids.append(result['id'])
                print(f"   ✓ {mission['name']}: {result['total_waypoints']} waypoints")

    def start_missions(self):
        print(f"\n🚀 Starting {len(self.mission_ids)} missions...")

        for mission_id in self.mission_ids:
            result = self._post(f"/api/missions/{mission_id}/control", {"action": "start"},
                                'started', mission_id)
            if result:
                print(f"   ✓ {mission_id}: {result['status']}")

    def load_all(self, data: Dict[str, Any], start: bool = False):
        print("\n" + "="*70)
        print("LOADING DUMMY DATA INTO MISSION CONTROL")
        print("="*70)

        if 'drones' in data:
            self.load_drones(data['drones'])

        if 'missions' in data:
            self.load_missions(data['missions'])

        if start:
            self.start_missions()

        self.print_summary()

    def print_summary(self):
        print("\n" + "="*70)
        print("LOADING SUMMARY")
        print("="*70)

        total_success = sum(s['success'] for s in self.stats.values())
        total_failed = sum(s['failed'] for s in self.stats.values())

        for name, counts in self.stats.items():
            print(f"✅ {name.capitalize()}: {counts['success']} ok, {counts['failed']} failed")

        print(f"\n📊 Total: {total_success} successful, {total_failed} failed")
        print("="*70)

    def _drone_for(self, index: Optional[int]) -> Optional[str]:
        if index is None or index >= len(self.drone_ids):
            return None
        return self.drone_ids[index]

    def _post(self, path: str, payload: Dict, stat: str, label: str) -> Optional[Dict]:
        """POST payload, count the outcome and return the JSON body on success"""
        try:
            response = requests.post(f"{self.base_url}{path}", headers=HEADERS,
                                     json=payload, timeout=TIMEOUT)
        except requests.RequestException as e:
            print(f"   ✗ {label}: {e}")
            self.stats[stat]['failed'] += 1
            return None

        if response.status_code in (200, 201):
            self.stats[stat]['success'] += 1
            return response.json()

        try:
            detail = response.json().get('detail', 'Error')
        except ValueError:
            detail = response.text
        print(f"   ✗ {label}: {detail}")
        self.stats[stat]['failed'] += 1
        return None

def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    start = '--start' in argv
    files = [a for a in argv if a != '--start']

    loader = DataLoader()

    print("🔍 Checking API server...")
    if not loader.check_server():
        print("❌ API server is not running!")
        print("\nPlease start the server first:")
        print("   uvicorn api_server:app --reload --port 8000")
        return 1

    print("✅ API server is running\n")

    if files:
        json_file = files[0]
        print(f"📄 Loading data from: {json_file}")

        try:
            with open(json_file, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            print(f"❌ File not found: {json_file}")
            return 1
        except json.JSONDecodeError as e:
            print(f"❌ Invalid JSON: {e}")
            return 1
    else:
        print("📦 Loading predefined dummy data")
        data = PREDEFINED_DATA

    loader.load_all(data, start=start)

    print("\n💡 Next steps:")
    print(f"   1. API docs: {loader.base_url}/docs")
    print(f"   2. Missions: curl {loader.base_url}/api/missions")
    print(f"   3. Live events: websocket {loader.base_url.replace('http', 'ws')}/ws")
    return 0

if __name__ == "__main__":
    sys.exit(main())
