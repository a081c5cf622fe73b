# kustoingest

Clients for getting data into Kusto tables. The package supplies the ingestion logic:
format and compression detection, gzip streaming, storage account ranking, retries and
fallbacks, and ingestion status tracking. You supply the objects that do the network
calls. The package uses only the standard library.

## Installation

```
pip install .
```

To also install the test tools:

```
pip install .[test]
```

## Ways to ingest

- **Streaming** (`kustoingest.streaming.Streaming`) passes the payload straight to a
  stream ingestor. Payloads in formats that compress well (for example CSV or JSON)
  are gzip-compressed on the way. A file path that is an `http`/`https` URL is sent as a
  small JSON body, `{"sourceUri": ...}`, with `is_blob_uri=True`.
- **Queued** (`kustoingest.queued.QueuedUploader`) uploads a local file or a stream to
  a blob container, choosing containers by the rank of their storage account. It then
  enqueues a base64 JSON message built by `IngestionProps.to_base64_json()`. An
  existing blob can be enqueued directly with `blob()`.
- **Managed** (`kustoingest.managed.Managed`) streams first and retries failures that
  are marked retryable, up to two retries with exponential backoff. It hands the data
  to the queued uploader when the retries run out. It also does so when the payload is
  too large to stream: more than 4 MiB after compression for streams and local files,
  or an estimated size over that limit for blob URIs.

`from_file` and `from_reader` on `Streaming` and `Managed` take these keyword options:
`database`, `table`, `format`, `ingestion_mapping_ref` (a `(name, DataFormat)` pair),
`client_request_id`, `dont_compress`, `compression_type`, `delete_local_source`,
`raw_data_size`, `backoff` (a `ManagedStreamingProps`), `flush_immediately`,
`ignore_first_record`, `tags`, `ingest_if_not_exists`, `report_method` and
`report_level`. Any other name raises `TypeError`.

## Objects you supply

- A stream ingestor for `Streaming` with
  `stream_ingest(database, table, payload, data_format, mapping_name, client_request_id, is_blob_uri)`
  and `close()`. `payload` is a readable binary stream.
- A storage backend for `QueuedUploader` with these methods:
  - `upload_stream(container, blob_name, reader, block_size, concurrency)`
  - `upload_file(container, blob_name, file, block_size, concurrency)`
  - `enqueue_message(queue, message)`

  Containers and queues are `ResourceURI` objects.
- A management client for `kustoingest.resources.ResourceManager` with
  `mgmt(database, command)`. It returns rows as mappings from column name to value.
  The manager runs `.get ingestion resources` and `.get kusto identity token`, caches
  the results, and retries only throttling errors (`HttpError` with status 429).
- Optionally, for `IngestionResult.put_queued`, a factory that makes a status table
  client with `read(source_id)` and `write(source_id, data)`.

## Example

```python
import io

from kustoingest.properties import DataFormat
from kustoingest.streaming import Streaming


class Ingestor:
    def stream_ingest(self, db, table, payload, data_format, mapping_name,
                      client_request_id, is_blob_uri):
        print(db, table, data_format.json_name(), len(payload.read()))

    def close(self):
        pass


with Streaming(Ingestor(), "MyDatabase", "MyTable") as client:
    result = client.from_reader(io.BytesIO(b"a,b,c\n"), format=DataFormat.CSV)
    print(result.record.status)  # Success
```

## Building blocks

- `kustoingest.properties`: `DataFormat` with `json_name()`, `camel_case()`,
  `mapping_kind()` and `should_compress()`. It also has `data_format_discovery(name)`,
  `remove_query_params_from_url(url)` and the property dataclasses (`AllProperties`,
  `IngestionProps`, `Additional`, `SourceOptions`, `StreamingProps`,
  `ManagedStreamingProps`).
- `kustoingest.utils`: `CompressionType`, `compression_discovery(name)` and
  `estimate_raw_data_size(compression, file_size)`.
- `kustoingest.gzip_stream`: `GzipStreamer`, a readable file-like object that
  compresses its source as you read it. `input_size()` reports how many source bytes
  it has read.
- `kustoingest.ranked`: `RankedStorageAccount` and `RankedStorageAccountSet`. They
  rank storage accounts by success rate over sliding time buckets, weighting newer
  buckets more. `ranked_shuffled_accounts()` returns the accounts best tier first.
- `kustoingest.queued`: besides `QueuedUploader`, it has `should_compress`,
  `complete_format_from_file_name`, `gen_blob_name` and `is_local_path`.
- `kustoingest.status`: `StatusCode`, `FailureStatusCode` and `StatusRecord`, an
  exception that carries an ingestion's status. There is also `status_from_map(data)`.
- `kustoingest.result`: `IngestionResult`. Its `wait(cancel=None)` polls the status
  table and raises the `StatusRecord` when the ingestion did not succeed. Helpers
  `is_status_record`, `get_ingestion_status`, `get_ingestion_failure_status`,
  `get_error_code` and `is_retryable` work on such errors.
- `kustoingest.errors`: `Op`, `Kind`, `KustoError` (with `set_no_retry()`),
  `HttpError` (with `is_throttled()`) and `is_retryable(err)`.

## What the package does not do

- It has no HTTP, blob, queue or table storage clients of its own. The objects
  described above must come from your code.
- It has no connection strings and no authentication.
- It has no command-line tool.

## Running the tests

```
pytest
```