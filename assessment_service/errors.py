class AssessmentError(Exception):
    status_code = 400

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.default_detail())

    @classmethod
    def default_detail(cls) -> str:
        return "Assessment error"

    @property
    def detail(self) -> str:
        return str(self)


class TestNotFound(AssessmentError):
    status_code = 404
    __test__ = False  # keep pytest from collecting it

    @classmethod
    def default_detail(cls) -> str:
        return "Test not found"


class AssignmentNotFound(AssessmentError):
    status_code = 404

    @classmethod
    def default_detail(cls) -> str:
        return "Assignment not found"


class QuestionNotFound(AssessmentError):
    status_code = 404

    @classmethod
    def default_detail(cls) -> str:
        return "Question not found"


class ResponseNotFound(AssessmentError):
    status_code = 404

    @classmethod
    def default_detail(cls) -> str:
        return "Response not found"


class EmptyTest(AssessmentError):
    status_code = 400

    @classmethod
    def default_detail(cls) -> str:
        return "Test has no questions"


class AssignmentNotStarted(AssessmentError):
    status_code = 409

    @classmethod
    def default_detail(cls) -> str:
        return "Test not in progress"


class AssignmentClosed(AssessmentError):
    status_code = 409

    @classmethod
    def default_detail(cls) -> str:
        return "Assignment already completed"


class InvalidGradeTarget(AssessmentError):
    status_code = 400

    @classmethod
    def default_detail(cls) -> str:
        return "Only open_text responses can be graded"


class InvalidGradeValue(AssessmentError):
    status_code = 422

    @classmethod
    def default_detail(cls) -> str:
        return "Grade percentage must be between 0 and 100"


class AssignmentNotCompleted(AssessmentError):
    status_code = 409

    @classmethod
    def default_detail(cls) -> str:
        return "Assignment has not been submitted yet"
