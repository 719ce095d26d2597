"""Vote casting and the voter/staff read models around it."""
import logging
from datetime import timedelta

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from credentials import credential_ttl, get_active_credential, is_expired
from errors import (AlreadyVoted, CandidateInactive, CandidateNotFound,
                    NoValidSession, NotFound)
from models import Candidate, User, Vote, VotingCredential, atomic, db, utcnow

logger = logging.getLogger(__name__)


def _find_validated_credential(voter_id, now):
    return (VotingCredential.query
            .filter(VotingCredential.voter_id == voter_id,
                    VotingCredential.is_validated.is_(True),
                    VotingCredential.is_used.is_(False),
                    VotingCredential.expires_at > now,
                    VotingCredential.created_at > now - credential_ttl())
            .order_by(VotingCredential.validated_at.desc())
            .first())


def cast_vote(voter_id, candidate_id):
    """
    Record the voter's single vote and consume their validated credential.

    Every guard is checked inside the transaction that writes the vote row,
    the voter's has_voted flag and the credential's is_used flag. The unique
    constraint on vote.voter_id is the final guard against a double vote.
    """
    try:
        with atomic() as session:
            now = utcnow()
            voter = (User.query.filter_by(id=voter_id)
                     .with_for_update().populate_existing().first())
            if voter is None:
                raise NotFound('Voter not found')
            if voter.has_voted:
                raise AlreadyVoted()

            candidate = session.get(Candidate, candidate_id)
            if candidate is None:
                raise CandidateNotFound()
            if not candidate.is_active:
                raise CandidateInactive()

            credential = _find_validated_credential(voter_id, now)
            if credential is None:
                # A concurrent cast may have consumed it after has_voted was read.
                session.refresh(voter)
                if voter.has_voted:
                    raise AlreadyVoted()
                raise NoValidSession()

            vote = Vote(voter_id=voter_id, candidate_id=candidate.id, created_at=now)
            session.add(vote)
            session.flush()

            marked = session.execute(
                update(User)
                .where(User.id == voter_id, User.has_voted.is_(False))
                .values(has_voted=True)
                .execution_options(synchronize_session=False))
            if marked.rowcount != 1:
                raise AlreadyVoted()

            consumed = session.execute(
                update(VotingCredential)
                .where(VotingCredential.id == credential.id,
                       VotingCredential.is_validated.is_(True),
                       VotingCredential.is_used.is_(False),
                       VotingCredential.expires_at > now,
                       VotingCredential.created_at > now - credential_ttl())
                .values(is_used=True, used_at=now)
                .execution_options(synchronize_session=False))
            if consumed.rowcount != 1:
                raise NoValidSession()
    except IntegrityError:
        logger.warning('Duplicate vote attempt rejected for voter %s', voter_id)
        raise AlreadyVoted()

    db.session.refresh(voter)
    logger.info('Vote %s recorded for voter %s', vote.id, voter_id)
    return vote


def active_candidates():
    return (Candidate.query.filter_by(is_active=True)
            .order_by(Candidate.created_at.asc(), Candidate.id.asc()).all())


def voting_status(voter):
    """What the voter's waiting screen polls for."""
    credential = get_active_credential(voter.id)
    vote = Vote.query.filter_by(voter_id=voter.id).first()
    can_vote = bool(credential and credential.is_validated and not credential.is_used
                    and not voter.has_voted and not is_expired(credential))
    return {
        'user': voter.to_dict(),
        'voting_session': {
            'id': credential.id,
            'is_validated': credential.is_validated,
            'is_used': credential.is_used,
            'expires_at': credential.expires_at.isoformat(),
        } if credential else None,
        'vote': {
            'id': vote.id,
            'candidate_name': vote.candidate.name,
            'candidate_nim': vote.candidate.nim,
            'created_at': vote.created_at.isoformat(),
        } if vote else None,
        'can_vote': can_vote,
    }


def vote_tally():
    counts = dict(db.session.query(Vote.candidate_id, func.count(Vote.id))
                  .group_by(Vote.candidate_id).all())
    total_votes = Vote.query.count()
    stats = []
    for candidate in active_candidates():
        count = counts.get(candidate.id, 0)
        percentage = round(count / total_votes * 100, 2) if total_votes > 0 else 0
        stats.append({
            'candidate_id': candidate.id,
            'candidate_name': candidate.name,
            'vote_count': count,
            'percentage': percentage,
        })
    return {'stats': stats, 'total_votes': total_votes}


def dashboard_stats():
    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today + timedelta(days=1)
    ttl = credential_ttl()
    return {
        'total_users': User.query.filter_by(role='voter').count(),
        'total_pending': VotingCredential.query.filter(
            VotingCredential.is_validated.is_(False),
            VotingCredential.is_used.is_(False),
            VotingCredential.expires_at >= now,
            VotingCredential.created_at >= now - ttl).count(),
        'total_validated': VotingCredential.query.filter(
            VotingCredential.is_validated.is_(True)).count(),
        'total_voted': User.query.filter_by(role='voter', has_voted=True).count(),
        'today_validations': VotingCredential.query.filter(
            VotingCredential.validated_at >= today,
            VotingCredential.validated_at < tomorrow).count(),
    }


def monitoring_stats():
    """Turnout totals plus each active candidate's share of the vote."""
    now = utcnow()
    tally = vote_tally()
    total_users = User.query.filter_by(role='voter').count()
    total_votes = tally['total_votes']
    return {
        'stats': {
            'total_users': total_users,
            'total_votes': total_votes,
            'total_candidates': Candidate.query.filter_by(is_active=True).count(),
            'pending_validations': VotingCredential.query.filter(
                VotingCredential.is_validated.is_(False),
                VotingCredential.is_used.is_(False),
                VotingCredential.expires_at >= now,
                VotingCredential.created_at >= now - credential_ttl()).count(),
            'voting_percentage': round(total_votes / total_users * 100) if total_users > 0 else 0,
        },
        'vote_stats': tally['stats'],
    }
