#!/usr/bin/env python3
"""
Manual smoke test for the STK push flow against a running server.

Sends an STK push through the backend, then follows the payment's SSE stream
until M-Pesa reports the outcome (approve or cancel the prompt on the phone).

Usage:
    python backend/stk_push_smoke.py 0712345678 T1 [amount] [user_id]
"""
import json
import sys

import requests

BASE_URL = "http://localhost:8000"


def run_smoke_test(phone: str, tournament_id: str, amount: str = "1", user_id: str = "smoke_user"):
    """Initiate a payment and print its updates."""
    headers = {"X-User-Id": user_id}

    print(f"📨 STK push: phone={phone}, tournament={tournament_id}, amount={amount}")
    print("=" * 70)

    try:
        response = requests.post(
            f"{BASE_URL}/api/payments/stk-push",
            json={"amount": amount, "phone": phone, "subjectId": tournament_id},
            headers=headers,
            timeout=60,
        )
        body = response.json()

        if response.status_code != 200:
            print(f"❌ Error: HTTP {response.status_code} {body.get('error_code')}")
            print(f"   {body.get('error')}")
            return

        transaction_id = body["transactionId"]
        print(f"✅ Push sent: transaction={transaction_id}, checkout={body.get('correlationId')}")
        print(f"   {body.get('customerMessage')}")

        # Follow payment updates
        stream = requests.get(
            f"{BASE_URL}/api/payments/{transaction_id}/events",
            headers=headers,
            stream=True,
            timeout=150,
        )

        event_type = None
        for line in stream.iter_lines():
            if not line:
                continue

            line = line.decode("utf-8")

            if line.startswith("event:"):
                event_type = line.split(":", 1)[1].strip()

            elif line.startswith("data:") and event_type == "payment_update":
                data = json.loads(line.split(":", 1)[1].strip())
                state = data.get("state")
                print(f"\n📡 Payment {state}")

                if state == "completed":
                    print(f"   ✅ Receipt: {data.get('receiptReference')}")
                elif state == "failed":
                    print(f"   ❌ {data.get('failureReason')} (code={data.get('resultCode')})")

        print("\n" + "=" * 70)
        print("✅ Stream complete")

    except requests.exceptions.Timeout:
        print("❌ Timeout - no outcome received")
    except requests.exceptions.ConnectionError:
        print("❌ Connection error - is the server running?")
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("Usage: python backend/stk_push_smoke.py <phone> <tournament_id> [amount] [user_id]")
        sys.exit(1)

    run_smoke_test(*sys.argv[1:5])
