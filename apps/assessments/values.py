"""
Typed wrappers for the JSON blobs stored on the schema.

- QuestionOrder: Attempt.question_order, the pooled or shuffled question ids
- OptionOrders: Attempt.option_orders, MCQ option order per question
- AcceptableAnswers: Question.correct_answer in any_match mode

Parsing never raises. A blob that cannot be read comes back empty so the
caller can fail closed (grade as zero) instead of crashing mid-transaction.
"""
import json
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestionOrder:
    question_ids: tuple = ()

    @classmethod
    def parse(cls, raw):
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unreadable question_order blob: %r", raw)
            return cls()

        if not isinstance(data, list):
            logger.warning("question_order is not a list: %r", raw)
            return cls()

        ids = []
        for item in data:
            # bool is an int subclass and never a valid id
            if isinstance(item, bool):
                return cls()
            try:
                ids.append(int(item))
            except (TypeError, ValueError):
                logger.warning("Non-integer id in question_order: %r", raw)
                return cls()
        return cls(tuple(ids))

    @classmethod
    def from_ids(cls, question_ids):
        return cls(tuple(int(qid) for qid in question_ids))

    def serialize(self):
        return json.dumps(list(self.question_ids))

    def arrange(self, question_ids):
        """`question_ids` in stored order; ids missing from it keep their order at the end."""
        position = {qid: index for index, qid in enumerate(self.question_ids)}
        return sorted(question_ids, key=lambda qid: position.get(qid, len(position)))

    def __bool__(self):
        return bool(self.question_ids)

    def __iter__(self):
        return iter(self.question_ids)

    def __len__(self):
        return len(self.question_ids)


@dataclass(frozen=True)
class AcceptableAnswers:
    """Lower-cased, trimmed answers accepted for an any_match question."""
    answers: tuple = ()

    @classmethod
    def parse(cls, raw):
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unreadable any_match answer set: %r", raw)
            return cls()

        if not isinstance(data, list):
            logger.warning("any_match answer set is not a list: %r", raw)
            return cls()

        return cls(tuple(str(item).strip().lower() for item in data))

    @classmethod
    def from_strings(cls, answers):
        return cls(tuple(str(a).strip().lower() for a in answers))

    def serialize(self):
        return json.dumps(list(self.answers))

    def __len__(self):
        return len(self.answers)


@dataclass(frozen=True)
class OptionOrders:
    """MCQ option ids per question, in the order one attempt shows them."""
    orders: tuple = ()

    @classmethod
    def parse(cls, raw):
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unreadable option_orders blob: %r", raw)
            return cls()

        if not isinstance(data, dict):
            logger.warning("option_orders is not a mapping: %r", raw)
            return cls()

        try:
            return cls.from_mapping(data)
        except (TypeError, ValueError):
            logger.warning("Non-integer id in option_orders: %r", raw)
            return cls()

    @classmethod
    def from_mapping(cls, mapping):
        return cls(tuple(
            (int(question_id), tuple(int(oid) for oid in option_ids))
            for question_id, option_ids in mapping.items()
        ))

    def serialize(self):
        return json.dumps({
            str(question_id): list(option_ids)
            for question_id, option_ids in self.orders
        })

    def arrange(self, question_id, options):
        """MCQOption objects re-ordered for `question_id`; unknown options go last."""
        stored = dict(self.orders).get(question_id, ())
        position = {oid: index for index, oid in enumerate(stored)}
        return sorted(options, key=lambda option: position.get(option.pk, len(position)))

    def __bool__(self):
        return bool(self.orders)
