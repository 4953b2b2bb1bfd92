"""Submission workflow example against the mock government endpoint.

Start the mock endpoint first, failing the first submission so the retry
path is visible:

    medsubmit mock start --fail-first-n 1

Then run this script. It creates a batch from the sample reports, queues it
outside the normal window with an override, and drains the queue until the
batch is submitted.
"""

import base64
import json
import logging
import time
from pathlib import Path

from medsubmit.config.schema import Config, GovernmentConfig, RetryConfig
from medsubmit.models.report import FinalizedReport
from medsubmit.reports.source import InMemoryReportSource
from medsubmit.storage.memory import InMemorySubmissionStore
from medsubmit.submission.anonymizer import Anonymizer
from medsubmit.submission.encryption import AesGcmEncryptor
from medsubmit.submission.engine import SubmissionWorkflowEngine
from medsubmit.submission.government_client import HttpGovernmentClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

SAMPLE_REPORTS = Path(__file__).parent / "reports_sample.json"


def main():
    print("=" * 80)
    print("Submission workflow against http://127.0.0.1:8080")
    print("=" * 80)
    print()

    config = Config(
        government=GovernmentConfig(api_url="http://127.0.0.1:8080", timeout_seconds=10),
        retry=RetryConfig(max_retries=3, base_delay_seconds=2.0, max_delay_seconds=10.0, jitter_seconds=0.5),
    )
    reports = [FinalizedReport.from_dict(data) for data in json.loads(SAMPLE_REPORTS.read_text())]

    engine = SubmissionWorkflowEngine(
        store=InMemorySubmissionStore(),
        report_source=InMemoryReportSource(reports),
        government_client=HttpGovernmentClient(config.government, api_key="example-key"),
        encryptor=AesGcmEncryptor(base64.b64decode(AesGcmEncryptor.generate_key())),
        config=config,
        anonymizer=Anonymizer(salt="example-salt"),
    )
    try:
        batch = engine.create_batch("2024-04", [r.id for r in reports], created_by="dr-popescu")
        engine.subscribe_to_submission_updates(
            batch.id, lambda update: print(f"  -> {update.batch_id} is now {update.status.value}")
        )
        engine.queue_submission_batch(batch.id, user_id="dr-popescu", override_window=True)

        for _ in range(10):
            result = engine.process_submission_queue()
            view = engine.get_submission_status(batch.id)
            print(f"Drain processed {result.processed} item(s); batch status {view.status.value}")
            if view.receipt is not None:
                print()
                print(f"Government reference: {view.receipt.government_reference}")
                print(f"Confirmation id:      {view.receipt.confirmation_id}")
                break
            time.sleep(1)

        print()
        print("Submission log:")
        for entry in engine.get_submission_status(batch.id).submission_log:
            print(f"  {entry.timestamp.isoformat()}  {entry.action.value:<16} {entry.details}")
    finally:
        engine.close()


if __name__ == "__main__":
    main()
