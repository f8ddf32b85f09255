"""Persistent job and account storage using JSON files."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Account, Config, Job, JobStatus


class Storage:
    """File-based storage for jobs, accounts and configuration."""

    def __init__(self, data_dir: str = ".clipqueue"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.data_dir / "jobs.json"
        self.accounts_file = self.data_dir / "accounts.json"
        self.config_file = self.data_dir / "config.json"

        # Initialize files if they don't exist
        if not self.jobs_file.exists():
            self._write_json(self.jobs_file, [])
        if not self.accounts_file.exists():
            self._write_json(self.accounts_file, [])
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump(mode="json"))

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return [] if file_path.name.endswith("s.json") else {}
        with open(file_path, "r") as f:
            return json.load(f)

    # Jobs

    def load(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        for job_data in self._read_json(self.jobs_file):
            if job_data["id"] == job_id:
                return Job(**job_data)
        return None

    def save(self, job: Job) -> None:
        """Insert or replace a job."""
        jobs = self._read_json(self.jobs_file)
        job_dict = job.model_dump(mode="json")
        for i, job_data in enumerate(jobs):
            if job_data["id"] == job.id:
                jobs[i] = job_dict
                break
        else:
            jobs.append(job_dict)
        self._write_json(self.jobs_file, jobs)

    def load_all(self) -> List[Job]:
        """Get all jobs in submission order."""
        jobs = [Job(**job_data) for job_data in self._read_json(self.jobs_file)]
        return sorted(jobs, key=lambda j: j.seq)

    def load_by_status(self, status: JobStatus) -> List[Job]:
        """Get all jobs in a specific status."""
        return [job for job in self.load_all() if job.status == status]

    def load_pending_for_user(self, user_id: str) -> List[Job]:
        """Get a user's queued jobs in submission order."""
        return [
            job for job in self.load_all()
            if job.user_id == user_id and job.status == JobStatus.QUEUED
        ]

    # Accounts

    def get_account(self, user_id: str) -> Account:
        """Get a user's account, defaulting to a fresh free-tier account."""
        for account_data in self._read_json(self.accounts_file):
            if account_data["user_id"] == user_id:
                return Account(**account_data)
        return Account(user_id=user_id)

    def save_account(self, account: Account) -> None:
        accounts = self._read_json(self.accounts_file)
        account_dict = account.model_dump(mode="json")
        for i, account_data in enumerate(accounts):
            if account_data["user_id"] == account.user_id:
                accounts[i] = account_dict
                break
        else:
            accounts.append(account_dict)
        self._write_json(self.accounts_file, accounts)

    def get_accounts(self) -> List[Account]:
        return [Account(**data) for data in self._read_json(self.accounts_file)]

    # Config

    def get_config(self) -> Config:
        """Get current configuration."""
        return Config(**self._read_json(self.config_file))

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        self._write_json(self.config_file, config.model_dump(mode="json"))

    def get_stats(self) -> Dict[str, int]:
        """Get job statistics."""
        jobs = self._read_json(self.jobs_file)
        stats = {status.value: 0 for status in JobStatus}
        stats["total"] = len(jobs)
        for job in jobs:
            state = job.get("status", JobStatus.QUEUED.value)
            if state in stats:
                stats[state] += 1
        return stats
