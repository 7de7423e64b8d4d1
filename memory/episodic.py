"""
Episodic Memory — records task attempts and mines them for reusable knowledge.

Lifecycle: start_episode -> record_step* -> end_episode | abandon_episode.
Only one episode is open at a time; starting a new one replaces the open one.
Persistence is best-effort: store failures are logged and the in-memory
history keeps working.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable

from memory.experience import (
    anonymize_parameters,
    categorize_error,
    experience_key,
    extract_parameter_hints,
    extract_tags,
    infer_task_type,
    normalize_error,
)
from memory.store import EpisodeStore, InMemoryEpisodeStore
from shared.config import MemoryConfig
from shared.models import (
    Episode,
    EpisodeContext,
    EpisodeStep,
    FailureReason,
    PatternStep,
    ReusableExperience,
    TaskPattern,
    ValidParameters,
    utc_now,
)

logger = logging.getLogger(__name__)


class EpisodicMemory:
    """Bounded episode history with similarity search and experience extraction."""

    def __init__(
        self,
        store: EpisodeStore | None = None,
        config: MemoryConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or MemoryConfig()
        self.store = store if store is not None else InMemoryEpisodeStore()
        self._clock = clock or utc_now
        self._episodes: list[Episode] = []
        self._experiences: list[ReusableExperience] = []
        self._current: dict[str, Any] | None = None
        self._current_steps: list[EpisodeStep] = []
        self._load()

    # ─── Recording ───────────────────────────────────────────

    def start_episode(self, user_request: str, context: EpisodeContext | None = None) -> str:
        episode_id = f"ep_{uuid.uuid4().hex[:12]}"
        self._current = {
            "id": episode_id,
            "user_request": user_request,
            "tags": extract_tags(user_request),
            "start_time": self._clock(),
            "context": context,
        }
        self._current_steps = []
        logger.debug("Episode started: %s request=%s", episode_id, user_request[:50])
        return episode_id

    def record_step(
        self,
        tool_name: str,
        parameters: dict[str, Any] | None,
        result: str,
        error: str | None = None,
        duration: float = 0.0,
        output_summary: str | None = None,
    ) -> None:
        if self._current is None:
            logger.warning("No active episode, step not recorded: %s", tool_name)
            return
        self._current_steps.append(
            EpisodeStep(
                step_number=len(self._current_steps) + 1,
                tool_name=tool_name,
                parameters=dict(parameters or {}),
                result=result,
                error=error,
                duration=duration,
                output_summary=output_summary,
            )
        )

    def end_episode(self, learnings: list[str] | None = None) -> Episode | None:
        if self._current is None:
            logger.warning("No active episode to end")
            return None

        end_time = self._clock()
        steps = list(self._current_steps)
        succeeded = sum(1 for step in steps if step.result == "success")
        total = len(steps)
        if total and succeeded == total:
            outcome = "success"
        elif succeeded == 0:
            outcome = "failure"
        else:
            outcome = "partial"

        failure_reason = None
        if outcome != "success":
            failed = next((step for step in steps if step.result == "failure"), None)
            failure_reason = (failed.error if failed else None) or "Unknown failure"

        start_time = self._current["start_time"]
        episode = Episode(
            id=self._current["id"],
            user_request=self._current["user_request"],
            tags=self._current["tags"],
            steps=steps,
            outcome=outcome,
            start_time=start_time,
            end_time=end_time,
            total_duration=max(0.0, (end_time - start_time).total_seconds()),
            success_rate=succeeded / total if total else 0.0,
            failure_reason=failure_reason,
            learnings=list(learnings or []),
            context=self._current["context"],
        )
        self._current = None
        self._current_steps = []

        self._episodes.append(episode)
        self._trim()
        self._persist_episodes()
        logger.info("Episode ended: %s outcome=%s success_rate=%.2f", episode.id, outcome, episode.success_rate)
        return episode

    def abandon_episode(self) -> None:
        if self._current is not None:
            logger.debug("Episode abandoned: %s", self._current["id"])
        self._current = None
        self._current_steps = []

    @property
    def has_open_episode(self) -> bool:
        return self._current is not None

    # ─── Queries ─────────────────────────────────────────────

    @property
    def episodes(self) -> list[Episode]:
        return list(self._episodes)

    @property
    def experiences(self) -> list[ReusableExperience]:
        return list(self._experiences)

    def find_similar(self, request: str, limit: int = 5) -> list[Episode]:
        tags = extract_tags(request)
        now = self._clock()
        window = max(self.config.recency_window_seconds, 1.0)

        scored: list[tuple[float, Episode]] = []
        for episode in self._episodes:
            score = 10.0 * sum(1 for tag in tags if tag in episode.tags)
            if episode.outcome == "success":
                score += 5.0
            age = max(0.0, (now - episode.end_time).total_seconds())
            score += max(0.0, 10.0 - age / window * 10.0)
            scored.append((score, episode))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [episode for _, episode in scored[: max(0, limit)]]

    def get_tool_history(self, tool_name: str) -> dict[str, Any]:
        usage = 0
        successes = 0
        total_duration = 0.0
        errors: list[str] = []
        for episode in self._episodes:
            for step in episode.steps:
                if step.tool_name != tool_name:
                    continue
                usage += 1
                total_duration += step.duration
                if step.result == "success":
                    successes += 1
                elif step.error:
                    errors.append(step.error)
        return {
            "usage_count": usage,
            "success_rate": successes / usage if usage else 0.0,
            "average_duration": total_duration / usage if usage else 0.0,
            "recent_errors": errors[-5:],
        }

    def analyze_patterns(self) -> dict[str, Any]:
        tool_usage: Counter[str] = Counter()
        tool_successes: Counter[str] = Counter()
        tool_durations: dict[str, float] = {}
        failures: dict[str, dict[str, Any]] = {}
        sequences: Counter[str] = Counter()
        sequence_durations: dict[str, float] = {}

        for episode in self._episodes:
            for step in episode.steps:
                tool_usage[step.tool_name] += 1
                tool_durations[step.tool_name] = tool_durations.get(step.tool_name, 0.0) + step.duration
                if step.result == "success":
                    tool_successes[step.tool_name] += 1
                if step.result == "failure" and step.error:
                    reason = normalize_error(step.error)
                    bucket = failures.setdefault(reason, {"count": 0, "tools": []})
                    bucket["count"] += 1
                    if step.tool_name not in bucket["tools"]:
                        bucket["tools"].append(step.tool_name)
            if episode.outcome == "success":
                sequence = " -> ".join(step.tool_name for step in episode.steps)
                sequences[sequence] += 1
                sequence_durations[sequence] = sequence_durations.get(sequence, 0.0) + episode.total_duration

        success_patterns = [
            {
                "pattern": pattern,
                "frequency": count,
                "average_duration": sequence_durations[pattern] / count,
            }
            for pattern, count in sequences.most_common(5)
        ]
        failure_patterns = [
            {"reason": reason, "frequency": data["count"], "affected_tools": data["tools"]}
            for reason, data in sorted(failures.items(), key=lambda item: item[1]["count"], reverse=True)[:5]
        ]
        tool_stats = {
            name: {
                "usage_count": count,
                "success_rate": tool_successes[name] / count,
                "average_duration": tool_durations[name] / count,
            }
            for name, count in tool_usage.items()
        }

        recommendations: list[str] = []
        for pattern in failure_patterns[:3]:
            if pattern["frequency"] >= 3:
                recommendations.append(
                    f"'{pattern['reason']}' failed {pattern['frequency']} times; "
                    f"affected tools: {', '.join(pattern['affected_tools'])}"
                )
        for name, stats in tool_stats.items():
            if stats["usage_count"] >= 5 and stats["success_rate"] < 0.5:
                recommendations.append(
                    f"Tool '{name}' has a low success rate ({stats['success_rate'] * 100:.0f}%); "
                    "check its parameters or use an alternative"
                )

        return {
            "success_patterns": success_patterns,
            "failure_patterns": failure_patterns,
            "tool_stats": tool_stats,
            "recommendations": recommendations,
        }

    def get_summary(self) -> dict[str, Any]:
        if not self._episodes:
            return {"total_episodes": 0, "success_rate": 0.0, "average_duration": 0.0, "top_tools": []}
        total = len(self._episodes)
        successes = sum(1 for episode in self._episodes if episode.outcome == "success")
        tool_counts: Counter[str] = Counter(
            step.tool_name for episode in self._episodes for step in episode.steps
        )
        return {
            "total_episodes": total,
            "success_rate": successes / total,
            "average_duration": sum(episode.total_duration for episode in self._episodes) / total,
            "top_tools": [{"name": name, "count": count} for name, count in tool_counts.most_common(5)],
        }

    # ─── Experience ──────────────────────────────────────────

    def extract_reusable_experience(self, episode: Episode) -> list[ReusableExperience]:
        """Distill one closed episode and merge it into the long-lived store.

        Returns the store entries touched by this extraction, in first-seen order.
        """
        now = self._clock()
        task_type = infer_task_type(episode.user_request)
        candidates: list[ReusableExperience] = []

        for step in episode.steps:
            if step.result == "failure" and step.error:
                error_type = categorize_error(step.error)
                candidates.append(self._new_experience(
                    "failure_reason",
                    FailureReason(
                        tool_name=step.tool_name,
                        error_type=error_type,
                        error_message=step.error,
                        trigger_condition=_describe_parameters(step.parameters),
                    ),
                    now,
                ))

        for step in episode.steps:
            if step.result == "success" and step.parameters:
                candidates.append(self._new_experience(
                    "valid_parameters",
                    ValidParameters(
                        tool_name=step.tool_name,
                        task_type=task_type,
                        parameters=anonymize_parameters(step.parameters),
                    ),
                    now,
                ))

        if episode.outcome == "success" and len(episode.steps) >= 2:
            candidates.append(self._new_experience(
                "task_pattern",
                TaskPattern(
                    task_type=task_type,
                    keywords=list(episode.tags),
                    steps=[
                        PatternStep(tool_name=step.tool_name, parameter_hints=extract_parameter_hints(step.parameters))
                        for step in episode.steps
                    ],
                    average_duration=episode.total_duration,
                ),
                now,
            ))

        touched: list[ReusableExperience] = []
        for candidate in candidates:
            merged = self._merge(candidate, now)
            if all(merged is not entry for entry in touched):
                touched.append(merged)

        if touched:
            self._persist_experiences()
        logger.debug("Extracted %d experience(s) from episode %s", len(touched), episode.id)
        return touched

    def get_relevant_experiences(self, request: str, tool_name: str | None = None) -> list[ReusableExperience]:
        task_type = infer_task_type(request)
        relevant: list[ReusableExperience] = []
        for experience in self._experiences:
            content = experience.content
            if isinstance(content, TaskPattern):
                if content.task_type == task_type:
                    relevant.append(experience)
            elif tool_name and isinstance(content, (FailureReason, ValidParameters)):
                if content.tool_name == tool_name:
                    relevant.append(experience)
        return sorted(relevant, key=lambda experience: experience.usage_count, reverse=True)

    def _new_experience(self, experience_type: str, content: Any, now: datetime) -> ReusableExperience:
        return ReusableExperience(
            id=f"{experience_type}_{uuid.uuid4().hex[:12]}",
            type=experience_type,
            created_at=now,
            last_used_at=now,
            content=content,
        )

    def _merge(self, candidate: ReusableExperience, now: datetime) -> ReusableExperience:
        key = experience_key(candidate.type, candidate.content)
        for existing in self._experiences:
            if existing.type != candidate.type or experience_key(existing.type, existing.content) != key:
                continue
            existing.usage_count += 1
            existing.last_used_at = now
            content = existing.content
            if isinstance(content, FailureReason):
                content.occurrence_count += 1
            elif isinstance(content, (ValidParameters, TaskPattern)):
                content.usage_count += 1
            return existing
        self._experiences.append(candidate)
        return candidate

    # ─── Bounds & persistence ────────────────────────────────

    def _trim(self) -> None:
        if len(self._episodes) > self.config.max_episodes:
            self._episodes = self._episodes[-self.config.max_episodes:]
        cutoff = self._clock() - timedelta(seconds=self.config.expiration_seconds)
        self._episodes = [episode for episode in self._episodes if episode.end_time > cutoff]

    def _load(self) -> None:
        if not self.config.enable_persistence:
            return
        try:
            self._episodes = list(self.store.load())
            self._experiences = list(self.store.load_experiences())
        except Exception as exc:
            logger.warning("Failed to load episodic memory, starting empty: %s", exc)
            self._episodes = []
            self._experiences = []
            return
        self._trim()
        logger.debug("Loaded %d episode(s), %d experience(s)", len(self._episodes), len(self._experiences))

    def _persist_episodes(self) -> None:
        if not self.config.enable_persistence:
            return
        try:
            self.store.save(list(self._episodes))
        except Exception as exc:
            logger.warning("Failed to persist episodes: %s", exc)

    def _persist_experiences(self) -> None:
        if not self.config.enable_persistence:
            return
        try:
            self.store.save_experiences(list(self._experiences))
        except Exception as exc:
            logger.warning("Failed to persist experiences: %s", exc)


def _describe_parameters(parameters: dict[str, Any]) -> str:
    return ", ".join(f"{key}={value}" for key, value in anonymize_parameters(parameters).items())
