"""
Batch ingestion for kbforge.

- collaborators: extractor, fetcher, document repository, indexer and
  tenant settings interfaces with in-process defaults
- validators: file and URL checks applied before a job is created
- batch_processor: fans a batch of inputs out into jobs and aggregates
  their status
"""
