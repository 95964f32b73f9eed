"""Loop closure process running in a separate Python process.

The process receives keyframes and loop candidates from the estimator,
decides loop closures, and sends loop constraints and relocalization
point clouds back. Pose corrections from the pose-graph optimizer are
applied to the stored keyframes.

Running in a separate process ensures that slow loop verification
doesn't block the estimator. ``LoopClosureWorker`` holds all the logic
and can be driven synchronously; ``LoopClosureProcess`` hosts a worker in
a spawned subprocess.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import queue
from collections.abc import Callable
from multiprocessing import Process, Queue
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..backend.covisibility import ObservationIndex, landmark_keys
from ..backend.keyframe import Keyframe, KeyframeRegistry
from ..config import Parameters
from ..features.brief import BriefExtractor
from ..features.brisk import BriskExtractor
from ..features.extractor import FeatureExtractor
from ..features.vocabulary import VisualVocabulary
from ..geometry import SE3
from .debug import LoopClosureDebugWriter
from .decision import LoopAttempt, LoopClosureDecision
from .messages import (
    LoopCandidateMessage,
    LoopClosureShutdownMessage,
    LoopConstraintMessage,
    LoopKeyframeData,
    LoopKeyframeMessage,
    PoseCorrectionMessage,
    RelocalizationMessage,
    RelocalizationPointCloud,
)

if TYPE_CHECKING:
    from multiprocessing import Queue as QueueType

logger = logging.getLogger(__name__)

RelocalizationObserver = Callable[[RelocalizationPointCloud], None]


def build_brief_extractor(params: Parameters) -> BriefExtractor:
    """Build the BRIEF extractor from configuration.

    Raises:
        FileNotFoundError: If the BRIEF pattern file is missing
        ValueError: If the BRIEF pattern file is malformed
    """
    features = params.features
    return BriefExtractor(
        pattern_file=features.brief_pattern_file,
        fast_threshold=features.fast_threshold,
    )


def build_brisk_extractor(params: Parameters) -> BriskExtractor | None:
    """Build the BRISK extractor, or None when BRISK is disabled."""
    features = params.features
    if not features.compute_brisk:
        return None
    return BriskExtractor(
        threshold=features.brisk_detection_threshold,
        octaves=features.brisk_octaves,
        max_keypoints=features.brisk_max_keypoints,
    )


class _RelocalizationSubject:
    """Holds at most one relocalization observer."""

    def __init__(self) -> None:
        self._observer: RelocalizationObserver | None = None

    def register_relocalization_observer(self, observer: RelocalizationObserver) -> None:
        """Register the consumer of relocalization point clouds.

        Raises:
            RuntimeError: If an observer is already registered
        """
        if self._observer is not None:
            raise RuntimeError("A relocalization observer is already registered")
        self._observer = observer

    @property
    def has_relocalization_observer(self) -> bool:
        return self._observer is not None


class LoopClosureWorker(_RelocalizationSubject):
    """Synchronous loop closure message handler.

    Owns the keyframe registry, the landmark observation index and the
    loop decision. Messages are handled strictly in order.

    Relocalization point clouds go to the registered observer if there is
    one, otherwise they are returned as ``RelocalizationMessage`` outputs.
    """

    def __init__(
        self,
        params: Parameters,
        vocabulary: VisualVocabulary | None = None,
        extractor: FeatureExtractor | None = None,
        brisk_extractor: BriskExtractor | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            params: Configuration
            vocabulary: Appearance vocabulary for keyframe appearance vectors
            extractor: BRIEF-style extractor (built from ``params`` if None)
            brisk_extractor: BRISK extractor (built from ``params`` if None
                and BRISK computation is enabled)
        """
        super().__init__()
        self._params = params
        self._vocabulary = vocabulary

        self._extractor = extractor or build_brief_extractor(params)
        self._brisk_extractor = brisk_extractor or build_brisk_extractor(params)

        debug = None
        if params.debug_mode:
            debug = LoopClosureDebugWriter(params.debug_output_path)
        self._decision = LoopClosureDecision(params, debug=debug)

        self._registry = KeyframeRegistry()
        self._observations = ObservationIndex()

    @property
    def registry(self) -> KeyframeRegistry:
        return self._registry

    @property
    def observations(self) -> ObservationIndex:
        return self._observations

    def handle(self, msg: Any) -> list[Any]:
        """Handle one message.

        Args:
            msg: LoopKeyframeMessage, LoopCandidateMessage or
                PoseCorrectionMessage

        Returns:
            Output messages to forward (possibly empty)

        Raises:
            TypeError: For unknown message types
            KeyError: If a message references an unknown keyframe index
        """
        if isinstance(msg, LoopKeyframeMessage):
            self.add_keyframe(msg.keyframe)
            return []
        if isinstance(msg, LoopCandidateMessage):
            return self.process_candidates(msg.current_index, msg.candidate_indices)
        if isinstance(msg, PoseCorrectionMessage):
            self.apply_pose_corrections(msg.pose_corrections)
            return []
        raise TypeError(f"Unsupported message type: {type(msg).__name__}")

    def add_keyframe(self, data: LoopKeyframeData) -> Keyframe:
        """Build a keyframe from a snapshot and register it.

        The landmark index is updated only after the keyframe is registered.
        """
        if data.index in self._registry:
            raise ValueError(f"Keyframe {data.index} is already registered")

        keys = landmark_keys(data.point_ids)
        if data.observation_counts is not None:
            counts = dict(data.observation_counts)
        else:
            counts = self._observations.shared_counts(keys, data.index)

        pose = data.pose
        if data.image is not None:
            keyframe = Keyframe.from_image(
                index=data.index,
                timestamp_ns=data.timestamp_ns,
                pose=pose,
                image=data.image,
                keypoints=data.keypoints,
                points_3d=data.points_3d,
                point_ids=data.point_ids,
                observation_counts=counts,
                params=self._params,
                extractor=self._extractor,
                vocabulary=self._vocabulary,
                brisk_extractor=self._brisk_extractor,
                sequence=data.sequence,
                is_keyframe=data.is_keyframe,
            )
        else:
            keyframe = Keyframe.pose_only(
                index=data.index,
                timestamp_ns=data.timestamp_ns,
                pose=pose,
                observation_counts=counts,
                sequence=data.sequence,
                is_keyframe=data.is_keyframe,
                min_weight=self._params.loop_closure.covisibility_min_weight,
            )

        self._registry.add(keyframe)
        self._observations.add_keyframe(keyframe.index, keys)

        if keyframe.index % 20 == 0:
            logger.info(
                "[LoopClosure] KF %d: %d window pts, %d features, %d connections, db_size=%d",
                keyframe.index,
                len(keyframe.window),
                len(keyframe.features),
                len(keyframe.connections),
                len(self._registry),
            )
        return keyframe

    def process_candidates(self, current_index: int, candidate_indices: list[int]) -> list[Any]:
        """Try candidates in order until one closes a loop.

        Returns:
            [LoopConstraintMessage] plus a RelocalizationMessage when no
            observer is registered; empty if no candidate was accepted
        """
        current = self._registry[current_index]
        for old_index in candidate_indices:
            if old_index == current_index:
                logger.warning("[LoopClosure] Skipping self candidate %d", old_index)
                continue
            old = self._registry.get(old_index)
            if old is None:
                logger.warning("[LoopClosure] Unknown loop candidate %d", old_index)
                continue

            attempt = self._decision.find_connection(current, old)
            if attempt.accepted:
                return self._accepted_outputs(current, attempt)

        return []

    def _accepted_outputs(self, current: Keyframe, attempt: LoopAttempt) -> list[Any]:
        constraint = current.loop_constraint()
        logger.info(
            "[LoopClosure] Loop detected: KF %d -> KF %d (inliers=%d)",
            attempt.current_index,
            attempt.old_index,
            attempt.num_inliers,
        )
        outputs: list[Any] = [LoopConstraintMessage(constraint=constraint, num_inliers=attempt.num_inliers)]

        match_set = attempt.match_set
        point_cloud = RelocalizationPointCloud(
            current_index=attempt.current_index,
            old_index=attempt.old_index,
            timestamp_ns=current.timestamp_ns,
            points_3d=match_set.points_3d.copy(),
            point_ids=match_set.point_ids.copy(),
            points_2d_old_norm=match_set.points_2d_old_norm.copy(),
        )
        if self._observer is not None:
            self._observer(point_cloud)
        else:
            outputs.append(RelocalizationMessage(point_cloud=point_cloud))
        return outputs

    def apply_pose_corrections(self, pose_corrections: dict[int, Any]) -> int:
        """Apply optimized poses to the stored keyframes.

        Returns:
            Number of keyframes updated
        """
        updated = 0
        for index, matrix in pose_corrections.items():
            keyframe = self._registry.get(index)
            if keyframe is None:
                continue
            keyframe.update_pose(SE3.from_matrix(matrix))
            updated += 1
        return updated


def _loop_closure_main(
    inbox: "QueueType",
    outbox: "QueueType",
    params: Parameters,
    vocabulary: VisualVocabulary | None,
) -> None:
    """Main loop for the loop closure process.

    Args:
        inbox: Queue to receive messages from the estimator
        outbox: Queue to send outputs back
        params: Configuration
        vocabulary: Appearance vocabulary (optional)
    """
    worker = LoopClosureWorker(params, vocabulary=vocabulary)

    logger.info("[LoopClosure] Process started")

    while True:
        try:
            msg = inbox.get(timeout=1.0)
        except queue.Empty:
            continue

        if isinstance(msg, LoopClosureShutdownMessage):
            logger.info("[LoopClosure] Shutdown received")
            break

        try:
            for output in worker.handle(msg):
                outbox.put(output)
        except Exception:
            logger.exception("[LoopClosure] Error handling %s", type(msg).__name__)
            continue

    logger.info("[LoopClosure] Process stopped")


class LoopClosureProcess(_RelocalizationSubject):
    """Manages the loop closure process.

    Provides start/stop lifecycle and message passing to/from
    the loop closure subprocess.
    """

    def __init__(
        self,
        params: Parameters,
        vocabulary_path: str | Path | None = None,
        queue_size: int = 100,
    ) -> None:
        """Initialize loop closure process manager.

        The vocabulary is loaded and the feature configuration checked here,
        before any subprocess exists.

        Args:
            params: Configuration
            vocabulary_path: Path to vocabulary .npz file
            queue_size: Capacity of each message queue

        Raises:
            FileNotFoundError: If the vocabulary or BRIEF pattern file is missing
            ValueError: If either file is malformed
        """
        super().__init__()
        self._params = params
        self._vocabulary = VisualVocabulary.load(vocabulary_path) if vocabulary_path else None
        build_brief_extractor(params)
        build_brisk_extractor(params)
        self._queue_size = queue_size

        self._process: Process | None = None
        self._to_loop_closure: Queue | None = None
        self._from_loop_closure: Queue | None = None

    def start(self) -> None:
        """Start the loop closure process."""
        if self._process is not None:
            return

        ctx = mp.get_context("spawn")
        self._to_loop_closure = ctx.Queue(maxsize=self._queue_size)
        self._from_loop_closure = ctx.Queue(maxsize=self._queue_size)

        self._process = ctx.Process(
            target=_loop_closure_main,
            args=(
                self._to_loop_closure,
                self._from_loop_closure,
                self._params,
                self._vocabulary,
            ),
            daemon=True,
        )
        self._process.start()

    def stop(self) -> None:
        """Stop the loop closure process."""
        if self._process is None:
            return

        if self._to_loop_closure is not None:
            try:
                self._to_loop_closure.put(LoopClosureShutdownMessage(), timeout=1.0)
            except queue.Full:
                logger.warning("[LoopClosure] Queue full; terminating process")

        self._process.join(timeout=5.0)

        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout=1.0)

        self._process = None
        self._to_loop_closure = None
        self._from_loop_closure = None

    def send(self, msg: Any) -> bool:
        """Send a message to the loop closure process.

        Returns:
            True if the message was queued
        """
        if self._to_loop_closure is None:
            return False

        try:
            self._to_loop_closure.put_nowait(msg)
            return True
        except queue.Full:
            logger.debug("[LoopClosure] Queue full, dropped %s", type(msg).__name__)
            return False

    def get_output(self, timeout: float = 0.0) -> Any | None:
        """Get one output message.

        Args:
            timeout: Timeout in seconds (0 for non-blocking)

        Returns:
            Output message if available, None otherwise
        """
        if self._from_loop_closure is None:
            return None

        try:
            if timeout > 0:
                return self._from_loop_closure.get(timeout=timeout)
            return self._from_loop_closure.get_nowait()
        except queue.Empty:
            return None

    def poll(self, timeout: float = 0.0) -> list[Any]:
        """Drain available outputs.

        Relocalization point clouds are dispatched to the registered
        observer; everything else is returned.
        """
        outputs = []
        msg = self.get_output(timeout)
        while msg is not None:
            if isinstance(msg, RelocalizationMessage) and self._observer is not None:
                self._observer(msg.point_cloud)
            else:
                outputs.append(msg)
            msg = self.get_output()
        return outputs

    @property
    def is_running(self) -> bool:
        """Check if process is running."""
        return self._process is not None and self._process.is_alive()

    def __enter__(self) -> LoopClosureProcess:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
