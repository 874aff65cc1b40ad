import json
import logging
import sys
from typing import Any, Dict

from pgbulk.errors import PgBulkError
from pgbulk.main import start


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry point running one COPY invocation."""
    try:
        results = start(event)
    except PgBulkError as e:
        logging.error(f"❌ {e.__class__.__name__}: {e}")
        body = {"error": str(e), "type": e.__class__.__name__}
        return {"statusCode": 400, "body": json.dumps(body)}
    return {"statusCode": 200, "body": json.dumps(results)}


if __name__ == "__main__":
    with open(sys.argv[1], encoding="utf-8") as f:
        print(json.dumps(start(json.load(f)), indent=2))
