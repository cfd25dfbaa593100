"""Building blocks for MongoDB replication: configuration, oplog tailing, filters,
namespace transforms, checkpoint storage, parallel document inserts and metrics."""

__version__ = "0.1.0"