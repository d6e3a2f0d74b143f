#!/usr/bin/env python3
"""
Room Cleanup Script for the Room Sync API
Sweeps abandoned and idle rooms through the running service
"""

import os
import sys

import requests


def get_base_url():
    return os.getenv("BACKEND_URL", "http://localhost:8000").rstrip("/")


def check_health(base_url):
    print("1. Checking server health...")
    try:
        response = requests.get(f"{base_url}/health", timeout=10)
        if response.status_code == 200:
            print("   ✅ Server is running")
            return True
        print(f"   ❌ Server returned status: {response.status_code}")
    except requests.exceptions.RequestException as e:
        print(f"   ❌ Server not responding: {e}")
    return False


def show_room(base_url, room_id):
    """Print presence details for one room"""
    try:
        response = requests.get(f"{base_url}/rooms/{room_id}/presence", timeout=15)
    except requests.exceptions.RequestException as e:
        print(f"❌ Error getting room {room_id}: {e}")
        return False

    if response.status_code == 404:
        print(f"🔴 Room {room_id} does not exist")
        return False
    if response.status_code != 200:
        print(f"❌ Failed to get room {room_id}: {response.status_code}")
        return False

    presence = response.json()
    status = "🔴 abandoned" if presence.get("abandoned") else "🟢 in use"
    print(f"📊 Room {room_id}: {status}")
    print(f"   - {presence.get('participant_count', 0)} participant entries")
    print(f"   - declared ids: {presence.get('declared_participant_ids', [])}")
    print(f"   - strictly active: {presence.get('strictly_active', [])}")
    return True


def cleanup_system():
    """Main cleanup function"""
    base_url = get_base_url()

    print("🧹 ROOM CLEANUP")
    print("=" * 60)

    if not check_health(base_url):
        return False

    print("\n2. Sweeping abandoned and idle rooms...")
    try:
        response = requests.post(f"{base_url}/cleanup", timeout=60)
    except requests.exceptions.Timeout:
        print("   ⚠️ Timed out (normal for large sweeps)")
        return True
    except requests.exceptions.RequestException as e:
        print(f"   ❌ Error: {e}")
        return False

    if response.status_code != 200:
        print(f"   ❌ Failed: {response.status_code}")
        return False

    result = response.json()
    print(f"   ✅ Checked {result.get('checked', 0)} rooms")
    print(f"      - {len(result.get('destroyed', []))} abandoned rooms removed")
    print(f"      - {len(result.get('idle_closed', []))} idle rooms closed")
    failed = result.get("failed", [])
    if failed:
        print(f"      - ⚠️ {len(failed)} rooms could not be removed: {', '.join(failed)}")

    print("\n" + "=" * 60)
    print("✅ CLEANUP COMPLETED!")
    return not failed


def main():
    """Main function with command line options"""
    if len(sys.argv) > 1:
        command = sys.argv[1].lower()

        if command == "help":
            print("🧹 Cleanup Script Usage:")
            print("  python cleanup.py                 - Sweep abandoned rooms")
            print("  python cleanup.py help            - Show this help")
            print("  python cleanup.py room <room_id>  - Show presence for one room")
            return

        elif command == "room":
            if len(sys.argv) < 3:
                print("❌ Missing room id")
                sys.exit(1)
            if not show_room(get_base_url(), sys.argv[2]):
                sys.exit(1)
            return

    success = cleanup_system()
    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
