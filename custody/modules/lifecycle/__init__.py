"""
Lifecycle Module

Delete, account reset and agent wallet rotation sagas:
- Single-flight operation locks
- Submit and confirm with bounded backoff
- Resumable user-paced signing

Author: Custody Team
Last Updated: 2026-10-18
"""
