"""Print a service-account JSON file as the base64 string FIREBASE_KEY expects."""
import base64
import json
import sys


def encode_service_account(path: str) -> str:
    with open(path, "r") as f:
        json_content = f.read()
    # Fail here rather than at app start-up
    json.loads(json_content)
    return base64.b64encode(json_content.encode("utf-8")).decode("utf-8")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: python -m app.scripts.firebase_encoder <service-account.json>")
    print(encode_service_account(sys.argv[1]))
