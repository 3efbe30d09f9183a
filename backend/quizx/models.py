from datetime import datetime, timezone, date

from quizx import db
from flask_login import UserMixin

# Session lifecycle values
STATUS_LOBBY = 'lobby'
STATUS_PLAYING = 'playing'
STATUS_PAUSED = 'paused'
STATUS_SHOWING_RESULTS = 'showing-results'
STATUS_FINISHED = 'finished'
SESSION_STATUSES = (STATUS_LOBBY, STATUS_PLAYING, STATUS_PAUSED, STATUS_SHOWING_RESULTS, STATUS_FINISHED)

QUIZ_COMPLETED = 'completed'


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    """Account owned by the auth service; only read here."""
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


class Quiz(db.Model):
    __tablename__ = 'quiz'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(64), default='Other')
    difficulty = db.Column(db.String(16), default='medium')  # easy, medium, hard
    status = db.Column(db.String(16), default='pending')  # pending, processing, completed, failed
    generated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    is_public = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    questions = db.relationship('Question', backref='quiz', order_by='Question.position',
                                cascade='all, delete-orphan')

    @property
    def total_questions(self):
        return len(self.questions)


class Question(db.Model):
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    question_text = db.Column(db.Text, nullable=False)
    options = db.Column(db.JSON, nullable=False, default=list)
    correct_answer = db.Column(db.Text, nullable=False)
    explanation = db.Column(db.Text, nullable=True)


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    # Reusable once the previous holder is finished, so indexed but not unique
    game_code = db.Column(db.String(6), nullable=False, index=True)
    host_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    quiz_id = db.Column(db.Integer, db.ForeignKey('quiz.id'), nullable=False)
    status = db.Column(db.String(32), default=STATUS_LOBBY, nullable=False)
    current_question_index = db.Column(db.Integer, default=-1, nullable=False)  # -1 means not started
    settings = db.Column(db.JSON, nullable=False, default=dict)
    question_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    total_participants = db.Column(db.Integer, default=0, nullable=False)
    average_score = db.Column(db.Integer, default=0, nullable=False)
    quiz = db.relationship('Quiz')
    participants = db.relationship('Participant', back_populates='session', order_by='Participant.id',
                                   cascade='all, delete-orphan')

    def refresh_stats(self):
        self.total_participants = len(self.participants)
        if self.participants:
            total = sum(p.score or 0 for p in self.participants)
            self.average_score = int(round(total / len(self.participants)))
        else:
            self.average_score = 0

    def get_leaderboard(self, limit=None):
        ranked = sorted(self.participants, key=lambda p: -(p.score or 0))
        if limit is not None:
            ranked = ranked[:limit]
        return [
            {'rank': idx + 1, 'nickname': p.nickname, 'score': p.score or 0}
            for idx, p in enumerate(ranked)
        ]

    def to_dict(self, include_answers=False):
        return {
            'id': self.id,
            'game_code': self.game_code,
            'host_id': self.host_id,
            'quiz_id': self.quiz_id,
            'status': self.status,
            'current_question_index': self.current_question_index,
            'settings': self.settings or {},
            'participants': [p.to_dict(include_answers=include_answers) for p in self.participants],
            'total_participants': self.total_participants,
            'average_score': self.average_score,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
        }


class Participant(db.Model):
    __tablename__ = 'participant'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    nickname = db.Column(db.String(64), nullable=False)
    connection_id = db.Column(db.String(64), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    score = db.Column(db.Integer, default=0, nullable=False)
    joined_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    session = db.relationship('GameSession', back_populates='participants')
    answers = db.relationship('ParticipantAnswer', backref='participant', order_by='ParticipantAnswer.question_index',
                              cascade='all, delete-orphan')

    def to_dict(self, include_answers=False):
        data = {
            'id': self.id,
            'nickname': self.nickname,
            'user_id': self.user_id,
            'score': self.score or 0,
            'joined_at': _iso(self.joined_at),
        }
        if include_answers:
            data['answers'] = [a.to_dict() for a in self.answers]
        return data


class ParticipantAnswer(db.Model):
    __tablename__ = 'participant_answer'
    __table_args__ = (
        db.UniqueConstraint('participant_id', 'question_index', name='uq_participant_answer_question'),
    )
    id = db.Column(db.Integer, primary_key=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('participant.id'), nullable=False)
    question_index = db.Column(db.Integer, nullable=False)
    answer = db.Column(db.Text, nullable=True)
    time_ms = db.Column(db.Integer, nullable=True)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    points_earned = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'question_index': self.question_index,
            'answer': self.answer,
            'time_ms': self.time_ms,
            'is_correct': self.is_correct,
            'points_earned': self.points_earned,
        }


class DailyActivity(db.Model):
    __tablename__ = 'daily_activity'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'date', name='uq_daily_activity_user_date'),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    date = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD
    games_played = db.Column(db.Integer, default=0, nullable=False)
    multiplayer_wins = db.Column(db.Integer, default=0, nullable=False)
    xp_earned = db.Column(db.Integer, default=0, nullable=False)
    streak_maintained = db.Column(db.Boolean, default=False, nullable=False)

    @classmethod
    def get_today(cls, user_id):
        """Fetch or create today's row for a user (not committed)."""
        today = date.today().isoformat()
        activity = cls.query.filter_by(user_id=user_id, date=today).first()
        if not activity:
            activity = cls(user_id=user_id, date=today, games_played=0, multiplayer_wins=0, xp_earned=0)
            db.session.add(activity)
        return activity

    def increment_game_played(self, won=False, xp=30):
        self.games_played += 1
        if won:
            self.multiplayer_wins += 1
        self.xp_earned += xp
        self.streak_maintained = True
