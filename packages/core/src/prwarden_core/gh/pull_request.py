from __future__ import annotations

from github import Github


def get_repo(repo_name: str, token: str | None):
    return Github(token).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_diff(pr):
    return pr.get_files()


def get_review_comments(pr):
    return pr.get_review_comments()


def get_issue_comments(pr):
    return pr.get_issue_comments()


def get_reviewers(pr) -> list[str]:
    """Return the unique logins that submitted a review, in first-review order."""
    seen: list[str] = []
    for review in pr.get_reviews():
        login = review.user.login if review.user else None
        if login and login not in seen:
            seen.append(login)
    return seen


def get_authenticated_login(token: str | None) -> str:
    return Github(token).get_user().login
